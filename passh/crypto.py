"""
passh - Cryptography Module

All low-level primitives live in this one file:
- AES-256-GCM with canonical associated data (content and key wrapping)
- HKDF-SHA256 for key-encryption keys
- OpenSSH key blobs and fingerprints
- Content-key wrapping for each SSH key type
- Password generation and best-effort wiping of secrets

Security Architecture:
    1. Each secret gets a fresh random content key -> AES-GCM encryption
    2. The content key is wrapped once per recipient SSH public key:
       - ssh-rsa:      RSA-OAEP (SHA-256)
       - ssh-ed25519:  ephemeral X25519 against the key's Montgomery form
       - ecdsa-sha2-*: ephemeral ECDH on the key's curve
    3. Keys that sign deterministically (Ed25519, RSA) can also get a
       signature slot, which an SSH agent can open without ever handing
       over the private key.

Never log anything produced or consumed here except fingerprints.
"""

import os
import json
import base64
import hashlib
import secrets
import string
from contextlib import contextmanager
from typing import Dict, Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthError, ParseError, ValidationError


# =============================================================================
# Configuration
# =============================================================================

CONTENT_KEY_SIZE = 32    # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for AES-GCM
TAG_SIZE = 16            # 128-bit authentication tag
CHALLENGE_SIZE = 32
AEAD_ALGO = "aes256gcm"

SLOT_RSA = "rsa-oaep-sha256"
SLOT_X25519 = "x25519-hkdf-sha256"
SLOT_ECDH = "ecdh-hkdf-sha256"
SLOT_SIGNATURE = "sshsig-hkdf-sha256"

KEY_TYPE_RSA = "ssh-rsa"
KEY_TYPE_ED25519 = "ssh-ed25519"
ECDSA_KEY_TYPES = {
    "secp256r1": "ecdsa-sha2-nistp256",
    "secp384r1": "ecdsa-sha2-nistp384",
    "secp521r1": "ecdsa-sha2-nistp521",
}

# Key types whose signatures are a pure function of key and message
DETERMINISTIC_SIGNERS = (KEY_TYPE_ED25519, KEY_TYPE_RSA)

WRAP_INFO = b"passh-cek-wrap-v1"
SIGNATURE_INFO = b"passh-sig-wrap-v1"

PASSWORD_SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?"

_ED25519_P = 2**255 - 19


# =============================================================================
# Canonical Associated Data
# =============================================================================

def canonical_ad(ad: dict) -> bytes:
    """
    Convert associated data to canonical JSON bytes.

    Same dict always gives the same bytes: keys sorted, no whitespace,
    UTF-8 without escaping.
    """
    json_str = json.dumps(ad, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return json_str.encode('utf-8')


# =============================================================================
# Encryption (AES-256-GCM)
# =============================================================================

def encrypt(key, plaintext, associated_data: dict) -> Tuple[bytes, bytes]:
    """
    Encrypt data with AES-256-GCM.

    Args:
        key: 32-byte encryption key (bytes or bytearray)
        plaintext: Data to encrypt
        associated_data: Context dict, authenticated but not encrypted

    Returns:
        (nonce, ciphertext) tuple; ciphertext carries the 16-byte tag
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, canonical_ad(associated_data))
    return nonce, ciphertext


def decrypt(key, nonce: bytes, ciphertext: bytes, associated_data: dict) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    Raises:
        cryptography.exceptions.InvalidTag: tampered data, wrong key or wrong AD
    """
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, canonical_ad(associated_data))


def hkdf(key_material, salt: bytes, info: bytes) -> bytes:
    """Derive a 32-byte key with HKDF-SHA256."""
    h = HKDF(
        algorithm=hashes.SHA256(),
        length=CONTENT_KEY_SIZE,
        salt=salt,
        info=info,
    )
    return h.derive(key_material)


def create_content_key() -> bytearray:
    """Fresh random content key, mutable so it can be wiped after use."""
    return bytearray(os.urandom(CONTENT_KEY_SIZE))


# =============================================================================
# Secret Lifetime
# =============================================================================

def zero(buffer: bytearray) -> None:
    """Overwrite a buffer in place (best effort, CPython may hold copies)."""
    buffer[:] = bytes(len(buffer))


@contextmanager
def wiped(buffer: bytearray):
    """Yield `buffer` and zero it on every exit path."""
    try:
        yield buffer
    finally:
        zero(buffer)


# =============================================================================
# SSH Public Keys
# =============================================================================

def ssh_key_type(public_key) -> str:
    """OpenSSH type name for a cryptography public key object."""
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return KEY_TYPE_ED25519
    if isinstance(public_key, rsa.RSAPublicKey):
        return KEY_TYPE_RSA
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        key_type = ECDSA_KEY_TYPES.get(public_key.curve.name)
        if key_type:
            return key_type
        raise ParseError(f"unsupported ECDSA curve: {public_key.curve.name}")
    raise ParseError(f"unsupported key type: {type(public_key).__name__}")


def key_blob(public_key) -> bytes:
    """SSH wire-format blob of a public key (what authorized_keys base64-encodes)."""
    line = public_key.public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return base64.b64decode(line.split()[1])


def fingerprint(blob: bytes) -> str:
    """OpenSSH-style SHA256 fingerprint, as printed by `ssh-keygen -lf`."""
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode('ascii').rstrip("=")


def load_public_blob(key_type: str, blob: bytes):
    """Parse an SSH wire-format public key blob (as sent by an agent)."""
    line = key_type.encode('ascii') + b" " + base64.b64encode(blob)
    return serialization.load_ssh_public_key(line)


def verify_signature(public_key, signature: bytes, data: bytes) -> bool:
    """Check a deterministic-scheme signature against a public key."""
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            return False
    except InvalidSignature:
        return False
    return True


# =============================================================================
# Ed25519 -> X25519
# =============================================================================

def ed25519_public_to_x25519(raw: bytes) -> bytes:
    """
    Map an Ed25519 public key to the X25519 public key of the same secret.

    Birational map from the Edwards y-coordinate: u = (1 + y) / (1 - y) mod p.
    """
    if len(raw) != 32:
        raise ParseError("Ed25519 public key must be 32 bytes")
    y = int.from_bytes(raw, "little") & ((1 << 255) - 1)
    if y >= _ED25519_P or y == 1:
        raise ParseError("invalid Ed25519 public key")
    u = (1 + y) * pow((1 - y) % _ED25519_P, _ED25519_P - 2, _ED25519_P) % _ED25519_P
    return u.to_bytes(32, "little")


def ed25519_private_to_x25519(private_key: ed25519.Ed25519PrivateKey) -> X25519PrivateKey:
    """X25519 key sharing the Ed25519 key's secret scalar (first half of SHA-512(seed))."""
    seed = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return X25519PrivateKey.from_private_bytes(hashlib.sha512(seed).digest()[:32])


def _raw(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _point(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


# =============================================================================
# Content Key Wrapping
# =============================================================================

def _wrap_ad(slot_type: str, key_fingerprint: str) -> dict:
    return {"ctx": "cek_wrap", "type": slot_type, "fingerprint": key_fingerprint}


def _wrap_with_kek(kek: bytes, content_key, slot_type: str, key_fingerprint: str) -> Dict[str, bytes]:
    nonce, wrapped = encrypt(kek, content_key, _wrap_ad(slot_type, key_fingerprint))
    return {"nonce": nonce, "wrapped": wrapped}


def _unwrap_with_kek(kek: bytes, fields: Dict[str, bytes], slot_type: str, key_fingerprint: str) -> bytearray:
    content_key = decrypt(kek, fields["nonce"], fields["wrapped"], _wrap_ad(slot_type, key_fingerprint))
    return bytearray(content_key)


def wrap_for_public_key(public_key, key_fingerprint: str, content_key) -> Tuple[str, Dict[str, bytes]]:
    """
    Wrap a content key so only the holder of the matching private key can recover it.

    Args:
        public_key: cryptography public key object (RSA, Ed25519 or ECDSA)
        key_fingerprint: fingerprint of that key, bound into the wrap
        content_key: 32-byte content key

    Returns:
        (slot_type, fields) where fields maps names to raw bytes
    """
    if isinstance(public_key, rsa.RSAPublicKey):
        wrapped = public_key.encrypt(bytes(content_key), _oaep())
        return SLOT_RSA, {"wrapped": wrapped}

    if isinstance(public_key, ed25519.Ed25519PublicKey):
        recipient = ed25519_public_to_x25519(_raw(public_key))
        ephemeral = X25519PrivateKey.generate()
        ephemeral_public = _raw(ephemeral.public_key())
        shared = ephemeral.exchange(X25519PublicKey.from_public_bytes(recipient))
        kek = hkdf(shared, ephemeral_public + recipient, WRAP_INFO)
        fields = _wrap_with_kek(kek, content_key, SLOT_X25519, key_fingerprint)
        fields["ephemeral"] = ephemeral_public
        return SLOT_X25519, fields

    if isinstance(public_key, ec.EllipticCurvePublicKey):
        ephemeral = ec.generate_private_key(public_key.curve)
        ephemeral_public = _point(ephemeral.public_key())
        shared = ephemeral.exchange(ec.ECDH(), public_key)
        kek = hkdf(shared, ephemeral_public + _point(public_key), WRAP_INFO)
        fields = _wrap_with_kek(kek, content_key, SLOT_ECDH, key_fingerprint)
        fields["ephemeral"] = ephemeral_public
        return SLOT_ECDH, fields

    raise ParseError(f"cannot wrap for key type {type(public_key).__name__}")


def unwrap_with_private_key(private_key, slot_type: str, fields: Dict[str, bytes], key_fingerprint: str) -> bytearray:
    """
    Recover a content key from a public-key slot.

    Raises:
        AuthError: the slot is not for this key type, or does not open
    """
    try:
        if slot_type == SLOT_RSA and isinstance(private_key, rsa.RSAPrivateKey):
            return bytearray(private_key.decrypt(fields["wrapped"], _oaep()))

        if slot_type == SLOT_X25519 and isinstance(private_key, ed25519.Ed25519PrivateKey):
            x_private = ed25519_private_to_x25519(private_key)
            recipient = _raw(x_private.public_key())
            ephemeral_public = fields["ephemeral"]
            shared = x_private.exchange(X25519PublicKey.from_public_bytes(ephemeral_public))
            kek = hkdf(shared, ephemeral_public + recipient, WRAP_INFO)
            return _unwrap_with_kek(kek, fields, slot_type, key_fingerprint)

        if slot_type == SLOT_ECDH and isinstance(private_key, ec.EllipticCurvePrivateKey):
            ephemeral_public = fields["ephemeral"]
            peer = ec.EllipticCurvePublicKey.from_encoded_point(private_key.curve, ephemeral_public)
            shared = private_key.exchange(ec.ECDH(), peer)
            kek = hkdf(shared, ephemeral_public + _point(private_key.public_key()), WRAP_INFO)
            return _unwrap_with_kek(kek, fields, slot_type, key_fingerprint)
    except (InvalidTag, ValueError, KeyError) as exc:
        raise AuthError(f"slot {slot_type} for {key_fingerprint} does not open") from exc

    raise AuthError(f"slot type {slot_type} does not match key {key_fingerprint}")


def _oaep():
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


# =============================================================================
# Signature Slots
# =============================================================================

def new_challenge() -> bytes:
    return os.urandom(CHALLENGE_SIZE)


def challenge_message(challenge: bytes, key_fingerprint: str) -> bytes:
    """
    The data a signer signs to open a signature slot.

    Domain-separated so it never collides with an SSH login or git signature.
    """
    return canonical_ad({
        "ctx": "passh-unwrap-v1",
        "challenge": challenge.hex(),
        "fingerprint": key_fingerprint,
    })


def wrap_with_signature(signature: bytes, challenge: bytes, key_fingerprint: str, content_key) -> Dict[str, bytes]:
    """Wrap a content key under HKDF(signature over the challenge)."""
    kek = hkdf(signature, challenge, SIGNATURE_INFO)
    fields = _wrap_with_kek(kek, content_key, SLOT_SIGNATURE, key_fingerprint)
    fields["challenge"] = challenge
    return fields


def unwrap_with_signature(signature: bytes, fields: Dict[str, bytes], key_fingerprint: str) -> bytearray:
    """
    Recover a content key from a signature slot.

    Raises:
        AuthError: the signature does not open the slot
    """
    try:
        kek = hkdf(signature, fields["challenge"], SIGNATURE_INFO)
        return _unwrap_with_kek(kek, fields, SLOT_SIGNATURE, key_fingerprint)
    except (InvalidTag, KeyError) as exc:
        raise AuthError(f"signature slot for {key_fingerprint} does not open") from exc


# =============================================================================
# Password Generation
# =============================================================================

def generate_password(length: int = 16, use_symbols: bool = True) -> str:
    """
    Generate a random password.

    Character sets: a-z, A-Z, 0-9 and, unless disabled, PASSWORD_SYMBOLS.
    """
    if length < 1:
        raise ValidationError("password length must be at least 1")

    chars = string.ascii_lowercase + string.ascii_uppercase + string.digits
    if use_symbols:
        chars += PASSWORD_SYMBOLS

    return ''.join(secrets.choice(chars) for _ in range(length))
