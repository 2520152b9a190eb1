"""
Crypto Module - Hybrid RSA/AES Chunk Encryption

Each chunk is sealed under a fresh AES key wrapped for the peer.
"""

from .hybrid import (
    KeyPair, EncryptedChunk, generate_key_pair, export_public_key,
    import_public_key, encrypt, decrypt, decode_iv,
)

__all__ = [
    'KeyPair',
    'EncryptedChunk',
    'generate_key_pair',
    'export_public_key',
    'import_public_key',
    'encrypt',
    'decrypt',
    'decode_iv',
]
