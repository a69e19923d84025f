"""Off-chain decryptor worker: polls ledger requests and submits results."""
