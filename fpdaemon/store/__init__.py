"""Local key-value storage for finality providers and public randomness proofs."""