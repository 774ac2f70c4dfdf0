from maestro.services.crypto.envelope import Envelope, EnvelopeService
from maestro.services.crypto.integrity import generate_secure_token, hash_bytes, verify_integrity
from maestro.services.crypto.keys import KeyManager, KeyStore, MemoryKeyStore, SqlKeyStore

__all__ = [
    "Envelope",
    "EnvelopeService",
    "KeyManager",
    "KeyStore",
    "MemoryKeyStore",
    "SqlKeyStore",
    "generate_secure_token",
    "hash_bytes",
    "verify_integrity",
]
