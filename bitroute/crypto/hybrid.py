"""
Hybrid Chunk Encryption

Design Decision: Per-Chunk Key Wrapping
=======================================

Options Considered:
1. One symmetric session key agreed at handshake
   - Cheapest per chunk
   - A single leaked key exposes the whole session

2. RSA-encrypt every chunk directly
   - Payload limited to a few hundred bytes

3. Fresh AES key per chunk, wrapped under the peer's RSA key
   - One RSA operation per chunk
   - Compromise of one key exposes one chunk

Decision: Option 3
- AES-256-GCM with a fresh key and a fresh 96-bit IV per chunk
- AES key wrapped with RSA-OAEP (SHA-256) under the receiver's public key
- Public keys travel as JSON Web Keys, so a browser peer can import them

Payload Layout:
```
+-------------------------------+------------------------------+
| Wrapped AES key (modulus len) | AES-GCM ciphertext + 16B tag |
+-------------------------------+------------------------------+
```
"""

import base64
import os
import logging
from dataclasses import dataclass
from typing import Dict, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import EncryptionFailed, DecryptionFailed

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
AES_KEY_BITS = 256
IV_SIZE = 12
GCM_TAG_SIZE = 16

JWK_ALGORITHM = 'RSA-OAEP-256'


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _b64url_encode(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, 'big')
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64url_decode(text: str) -> int:
    padded = text + '=' * (-len(text) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), 'big')


@dataclass(frozen=True)
class KeyPair:
    """An RSA key pair. Only the public half is ever exported."""
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey

    def export_public_key(self) -> Dict[str, Any]:
        return export_public_key(self.public_key)


@dataclass(frozen=True)
class EncryptedChunk:
    """Result of encrypting one chunk."""
    iv: bytes
    payload: bytes  # wrapped key || ciphertext

    @property
    def iv_b64(self) -> str:
        return base64.b64encode(self.iv).decode('ascii')


def generate_key_pair(key_size: int = RSA_KEY_SIZE) -> KeyPair:
    """Generate a fresh RSA key pair suitable for wrapping AES keys."""
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=key_size,
    )
    return KeyPair(public_key=private_key.public_key(), private_key=private_key)


def export_public_key(public_key: rsa.RSAPublicKey) -> Dict[str, Any]:
    """Export a public key as a JSON Web Key dict."""
    numbers = public_key.public_numbers()
    return {
        'kty': 'RSA',
        'n': _b64url_encode(numbers.n),
        'e': _b64url_encode(numbers.e),
        'alg': JWK_ALGORITHM,
        'ext': True,
        'key_ops': ['encrypt'],
    }


def import_public_key(jwk: Dict[str, Any]) -> rsa.RSAPublicKey:
    """
    Import a public key from a JSON Web Key dict.

    Raises:
        ValueError: If the JWK is not a usable RSA public key
    """
    if not isinstance(jwk, dict) or jwk.get('kty') != 'RSA':
        raise ValueError("Public key must be an RSA JWK")
    try:
        numbers = rsa.RSAPublicNumbers(
            e=_b64url_decode(jwk['e']),
            n=_b64url_decode(jwk['n']),
        )
        return numbers.public_key()
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid RSA JWK: {e}") from e


def encrypt(plaintext: bytes, peer_public_key: rsa.RSAPublicKey) -> EncryptedChunk:
    """
    Encrypt a chunk for the holder of peer_public_key.

    A new AES key and IV are generated on every call.

    Raises:
        EncryptionFailed: If the key cannot be wrapped or the data encrypted
    """
    try:
        key = AESGCM.generate_key(bit_length=AES_KEY_BITS)
        iv = os.urandom(IV_SIZE)
        ciphertext = AESGCM(key).encrypt(iv, bytes(plaintext), None)
        wrapped_key = peer_public_key.encrypt(key, _oaep())
    except (TypeError, ValueError, AttributeError) as e:
        raise EncryptionFailed(f"Chunk encryption failed: {e}") from e

    return EncryptedChunk(iv=iv, payload=wrapped_key + ciphertext)


def decrypt(iv: bytes, payload: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """
    Decrypt a chunk payload produced by encrypt().

    Raises:
        DecryptionFailed: For malformed, truncated, tampered or
            wrong-key payloads
    """
    wrapped_length = private_key.key_size // 8

    if len(iv) != IV_SIZE:
        raise DecryptionFailed(f"Bad IV length: {len(iv)}")
    if len(payload) < wrapped_length + GCM_TAG_SIZE:
        raise DecryptionFailed(f"Payload too short: {len(payload)} bytes")

    wrapped_key = payload[:wrapped_length]
    ciphertext = payload[wrapped_length:]

    try:
        key = private_key.decrypt(wrapped_key, _oaep())
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except (InvalidTag, ValueError) as e:
        raise DecryptionFailed("Chunk could not be decrypted") from e


def decode_iv(iv_b64: str) -> bytes:
    """Decode a base64 IV from a chunk header."""
    try:
        return base64.b64decode(iv_b64, validate=True)
    except (TypeError, ValueError) as e:
        raise DecryptionFailed(f"Bad IV encoding: {e}") from e
