"""
passh - Envelope Encryption

An Envelope is what lands on disk for one secret:

    {
      "version": 1,
      "aead": "aes256gcm",
      "nonce": "<base64>",
      "ciphertext": "<base64, includes GCM tag>",
      "slots": [
        {"type": "x25519-hkdf-sha256", "fingerprint": "SHA256:...", "ephemeral": "...", ...},
        ...
      ]
    }

Each slot holds the content key wrapped for one recipient. The header
(version, algorithm, slots) and the caller's context are bound into the
content AEAD, so editing any of them is detected.
"""

import json
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from cryptography.exceptions import InvalidTag

from . import crypto
from .errors import AuthError, EncryptError, IntegrityError

logger = logging.getLogger("passh.envelope")

ENVELOPE_VERSION = 1


@dataclass
class Slot:
    """The content key wrapped for one recipient fingerprint."""

    type: str
    fingerprint: str
    fields: Dict[str, bytes] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {"type": self.type, "fingerprint": self.fingerprint}
        for name in sorted(self.fields):
            data[name] = base64.b64encode(self.fields[name]).decode('ascii')
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        data = dict(data)
        slot_type = data.pop("type")
        fingerprint = data.pop("fingerprint")
        if not isinstance(slot_type, str) or not isinstance(fingerprint, str):
            raise ValueError("slot type and fingerprint must be strings")
        fields = {name: base64.b64decode(value, validate=True) for name, value in data.items()}
        return cls(slot_type, fingerprint, fields)


@dataclass
class Envelope:
    """Nonce, authenticated ciphertext and per-recipient key slots."""

    nonce: bytes
    ciphertext: bytes
    slots: List[Slot]
    version: int = ENVELOPE_VERSION
    aead: str = crypto.AEAD_ALGO

    def header(self) -> dict:
        return {
            "version": self.version,
            "aead": self.aead,
            "slots": [slot.to_dict() for slot in self.slots],
        }

    def fingerprints(self) -> List[str]:
        return sorted({slot.fingerprint for slot in self.slots})

    def to_bytes(self) -> bytes:
        data = self.header()
        data["nonce"] = base64.b64encode(self.nonce).decode('ascii')
        data["ciphertext"] = base64.b64encode(self.ciphertext).decode('ascii')
        return (json.dumps(data, indent=2, sort_keys=True) + "\n").encode('utf-8')

    @classmethod
    def from_bytes(cls, data: bytes) -> "Envelope":
        """
        Parse a serialized envelope.

        Raises:
            IntegrityError: not a well-formed envelope
        """
        try:
            doc = json.loads(data.decode('utf-8'))
            version = doc["version"]
            if version != ENVELOPE_VERSION:
                raise IntegrityError(f"unsupported envelope version: {version!r}")
            aead = doc["aead"]
            if aead != crypto.AEAD_ALGO:
                raise IntegrityError(f"unsupported envelope cipher: {aead!r}")
            return cls(
                nonce=base64.b64decode(doc["nonce"], validate=True),
                ciphertext=base64.b64decode(doc["ciphertext"], validate=True),
                slots=[Slot.from_dict(slot) for slot in doc["slots"]],
                version=version,
                aead=aead,
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, binascii.Error) as exc:
            raise IntegrityError(f"malformed envelope: {exc}") from exc


class EnvelopeCipher:
    """
    Hybrid encryption addressed to the recipients of a KeyRing.

    Usage:
        cipher = EnvelopeCipher(keyring)
        envelope = cipher.encrypt(b"secret")
        plaintext = cipher.decrypt(envelope)

    Signature slots, the only slots an ssh-agent key can open, are written
    only for recipients whose signer is in the keyring. Without a keyring
    (or without that signer) the envelope has public-key slots only and
    needs the private key file to open.
    """

    def __init__(self, keyring=None):
        self.keyring = keyring

    def encrypt(self, plaintext, recipients: Optional[Iterable] = None, context: Optional[dict] = None) -> Envelope:
        """
        Encrypt a secret under a fresh content key.

        Args:
            plaintext: Secret (bytes-like or str)
            recipients: PublicKeys to address; defaults to the KeyRing's
            context: Extra associated data (e.g. the entry name) that
                decrypt() must be given again

        Raises:
            EncryptError: no recipients, or a primitive failed
        """
        if recipients is None:
            recipients = self.keyring.recipients if self.keyring is not None else []
        recipients = list(recipients)
        if not recipients:
            raise EncryptError("no public keys available for encryption")
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        with crypto.wiped(crypto.create_content_key()) as content_key:
            try:
                slots = []
                for recipient in recipients:
                    slot_type, fields = crypto.wrap_for_public_key(recipient.key, recipient.fingerprint, content_key)
                    slots.append(Slot(slot_type, recipient.fingerprint, fields))
                    signature_slot = self._signature_slot(recipient, content_key)
                    if signature_slot is not None:
                        slots.append(signature_slot)

                envelope = Envelope(nonce=b"", ciphertext=b"", slots=slots)
                envelope.nonce, envelope.ciphertext = crypto.encrypt(
                    content_key, plaintext, self._content_ad(envelope, context)
                )
            except (ValueError, TypeError) as exc:
                raise EncryptError(f"encryption failed: {exc}") from exc

        logger.debug("Encrypted %d bytes for %d recipient(s), %d slot(s)",
                     len(plaintext), len(recipients), len(slots))
        return envelope

    def decrypt(self, envelope, signers: Optional[Iterable] = None, context: Optional[dict] = None) -> bytearray:
        """
        Open an envelope with the first signer that can unwrap a slot.

        Returns:
            Plaintext as a bytearray (wipe it when done)

        Raises:
            AuthError: no signer matches or opens any slot
            IntegrityError: a slot opened but the ciphertext was modified
        """
        if isinstance(envelope, (bytes, bytearray)):
            envelope = Envelope.from_bytes(bytes(envelope))
        if signers is None:
            signers = self.keyring.signers if self.keyring is not None else []

        content_key = self._unwrap(envelope, list(signers))
        with crypto.wiped(content_key):
            try:
                plaintext = crypto.decrypt(
                    content_key, envelope.nonce, envelope.ciphertext, self._content_ad(envelope, context)
                )
            except (InvalidTag, ValueError) as exc:
                raise IntegrityError("envelope failed authentication (modified or corrupted)") from exc
        return bytearray(plaintext)

    def _unwrap(self, envelope: Envelope, signers: list) -> bytearray:
        for signer in signers:
            for slot in envelope.slots:
                if slot.fingerprint != signer.fingerprint:
                    continue
                try:
                    content_key = signer.unwrap(slot.type, slot.fields)
                except AuthError as exc:
                    logger.debug("Slot %s not opened by %r: %s", slot.type, signer, exc)
                    continue
                if len(content_key) != crypto.CONTENT_KEY_SIZE:
                    crypto.zero(content_key)
                    continue
                logger.debug("Opened %s slot with %r", slot.type, signer)
                return content_key
        raise AuthError(
            "no matching key can decrypt this entry (envelope keys: %s)" % ", ".join(envelope.fingerprints())
        )

    def _signature_slot(self, recipient, content_key) -> Optional[Slot]:
        if self.keyring is None:
            return None
        signer = self.keyring.signer_for(recipient.fingerprint)
        if signer is None or not signer.can_sign:
            return None
        challenge = crypto.new_challenge()
        message = crypto.challenge_message(challenge, recipient.fingerprint)
        try:
            signature = signer.sign(message)
        except AuthError as exc:
            logger.info("No signature slot for %s: %s", recipient.fingerprint, exc)
            return None
        if not crypto.verify_signature(recipient.key, signature, message):
            logger.info("No signature slot for %s: signature does not verify", recipient.fingerprint)
            return None
        fields = crypto.wrap_with_signature(signature, challenge, recipient.fingerprint, content_key)
        return Slot(crypto.SLOT_SIGNATURE, recipient.fingerprint, fields)

    @staticmethod
    def _content_ad(envelope: Envelope, context: Optional[dict]) -> dict:
        return {"ctx": "entry_content", "header": envelope.header(), "context": context or {}}
