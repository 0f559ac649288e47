"""Decryption of resource data attached to rich notifications.

The publisher wraps a random AES key with the relay's RSA public key
(``dataKey``), encrypts the resource with AES-256-CBC (``data``) and signs
the ciphertext with HMAC-SHA256 under the same AES key (``dataSignature``).
The IV is the first 16 bytes of the AES key.
"""

import base64
import binascii
import hashlib
import hmac
import logging
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, OAEP
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from webhook_relay.errors import DecryptionError

logger = logging.getLogger(__name__)

OAEP_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
}

IV_SIZE = 16


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"{what} is not valid base64") from e


def load_private_key(path: str | Path, password: str | None = None) -> rsa.RSAPrivateKey:
    """Load the PEM private key matching the certificate given to the publisher."""
    data = Path(path).read_bytes()
    key = serialization.load_pem_private_key(
        data, password=password.encode() if password else None
    )
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"{path} does not contain an RSA private key")
    return key


def load_certificate(path: str | Path) -> str:
    """Return the PEM certificate at ``path`` as base64 DER, as subscriptions expect it."""
    certificate = x509.load_pem_x509_certificate(Path(path).read_bytes())
    return base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode()


def decrypt_symmetric_key(
    encrypted_key_b64: str, private_key: rsa.RSAPrivateKey, oaep_hash: str = "sha1"
) -> bytes:
    """Unwrap the AES key with RSA-OAEP."""
    try:
        algorithm = OAEP_HASHES[oaep_hash]()
    except KeyError as e:
        raise DecryptionError(f"Unsupported OAEP hash: {oaep_hash}") from e

    encrypted_key = _b64decode(encrypted_key_b64, "dataKey")
    try:
        return private_key.decrypt(
            encrypted_key,
            OAEP(mgf=MGF1(algorithm=algorithm), algorithm=algorithm, label=None),
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        raise DecryptionError("Could not unwrap the symmetric key") from e


def verify_signature(signature_b64: str, data_b64: str, symmetric_key: bytes) -> bool:
    """Check the HMAC-SHA256 of the raw ciphertext. Mismatch is not an error."""
    try:
        expected = base64.b64decode(signature_b64, validate=True)
        ciphertext = base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError):
        return False

    actual = hmac.new(symmetric_key, ciphertext, hashlib.sha256).digest()
    return hmac.compare_digest(actual, expected)


def decrypt_payload(data_b64: str, symmetric_key: bytes) -> bytes:
    """Decrypt the AES-CBC ciphertext and strip PKCS7 padding."""
    ciphertext = _b64decode(data_b64, "data")
    if not ciphertext or len(ciphertext) % (algorithms.AES.block_size // 8):
        raise DecryptionError("Ciphertext length is not a multiple of the block size")

    try:
        cipher = Cipher(algorithms.AES(symmetric_key), modes.CBC(symmetric_key[:IV_SIZE]))
    except ValueError as e:
        raise DecryptionError(f"Invalid symmetric key length: {len(symmetric_key)}") from e

    decryptor = cipher.decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("Invalid padding in decrypted payload") from e


class PayloadDecryptor:
    """Binds the relay's private key to the three decryption steps.

    Callers must run the steps in order (unwrap, verify, decrypt) and stop
    when verification fails.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, oaep_hash: str = "sha1") -> None:
        if oaep_hash not in OAEP_HASHES:
            raise ValueError(f"Unsupported OAEP hash: {oaep_hash}")
        self.private_key = private_key
        self.oaep_hash = oaep_hash

    @classmethod
    def from_file(
        cls, path: str | Path, password: str | None = None, oaep_hash: str = "sha1"
    ) -> "PayloadDecryptor":
        logger.info(f"Loading notification decryption key from {path}")
        return cls(load_private_key(path, password), oaep_hash=oaep_hash)

    def decrypt_symmetric_key(self, encrypted_key_b64: str) -> bytes:
        return decrypt_symmetric_key(encrypted_key_b64, self.private_key, self.oaep_hash)

    def verify_signature(self, signature_b64: str, data_b64: str, symmetric_key: bytes) -> bool:
        return verify_signature(signature_b64, data_b64, symmetric_key)

    def decrypt_payload(self, data_b64: str, symmetric_key: bytes) -> bytes:
        return decrypt_payload(data_b64, symmetric_key)
