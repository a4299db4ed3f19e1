import base64
import binascii
import json
import os
import stat

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


KEY_BYTES = 32
NONCE_BYTES = 12
SALT_BYTES = 16
KDF_ITERATIONS = 390000
KEY_FILE_NAME = "encryption.key"
SALT_FILE_NAME = "encryption.salt"


class PayloadDecryptionError(RuntimeError):
    """Raised when a stored payload cannot be authenticated or decoded."""


class PayloadCipher:
    """AES-GCM over JSON documents, bound to caller-supplied associated data."""

    def __init__(self, key):
        if len(key) != KEY_BYTES:
            raise ValueError(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def encrypt_json(self, obj, associated_data=""):
        nonce = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        ciphertext = self._aead.encrypt(nonce, plaintext, associated_data.encode("utf-8"))
        return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def decrypt_json(self, token, associated_data=""):
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (AttributeError, UnicodeEncodeError, binascii.Error, ValueError) as exc:
            raise PayloadDecryptionError("Stored payload is not valid base64") from exc
        if len(raw) <= NONCE_BYTES:
            raise PayloadDecryptionError("Stored payload is truncated")
        try:
            plaintext = self._aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], associated_data.encode("utf-8"))
        except InvalidTag as exc:
            raise PayloadDecryptionError("Stored payload failed authentication") from exc
        return json.loads(plaintext.decode("utf-8"))


def decode_key(value):
    try:
        key = base64.urlsafe_b64decode(value.strip().encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("ENCRYPTION_KEY must be urlsafe base64") from exc
    if len(key) != KEY_BYTES:
        raise ValueError(f"ENCRYPTION_KEY must decode to {KEY_BYTES} bytes")
    return key


def generate_key_text():
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=KEY_BYTES * 8)).decode("ascii")


def derive_key(passphrase, salt):
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=salt, iterations=KDF_ITERATIONS)
    return kdf.derive(passphrase.encode("utf-8"))


def _write_file_secure(path, data):
    with open(path, "wb") as fh:
        fh.write(data)
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)


def _load_or_create(path, factory):
    if os.path.exists(path):
        with open(path, "rb") as fh:
            return fh.read()
    data = factory()
    _write_file_secure(path, data)
    return data


def load_cipher(config, instance_path):
    """Build the payload cipher from app config.

    Precedence: ``ENCRYPTION_KEY``, then ``ENCRYPTION_PASSPHRASE`` (PBKDF2
    with ``ENCRYPTION_SALT`` or a salt file in the instance folder), then a
    key file generated in the instance folder.
    """
    key_text = (config.get("ENCRYPTION_KEY") or "").strip()
    if key_text:
        return PayloadCipher(decode_key(key_text))

    passphrase = config.get("ENCRYPTION_PASSPHRASE") or ""
    if passphrase.strip():
        salt_text = (config.get("ENCRYPTION_SALT") or "").strip()
        if salt_text:
            salt = salt_text.encode("utf-8")
        else:
            salt = _load_or_create(os.path.join(instance_path, SALT_FILE_NAME), lambda: os.urandom(SALT_BYTES))
        return PayloadCipher(derive_key(passphrase, salt))

    key_file = os.path.join(instance_path, KEY_FILE_NAME)
    return PayloadCipher(decode_key(_load_or_create(key_file, lambda: generate_key_text().encode("ascii")).decode("ascii")))
