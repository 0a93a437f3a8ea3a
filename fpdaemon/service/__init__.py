"""Chain polling, signing, randomness commitment, finality voting and the provider instance."""