"""
Test helpers: throwaway SSH keys and an in-process ssh-agent.

Not a test module itself; imported by the test_*.py scripts.
"""

import os
import struct
import tempfile
import threading
import socketserver
from pathlib import Path

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from passh import crypto
from passh.agent import pack_string, read_string
from passh.config import Config
from passh.keys import KeyRing

_RSA_CACHE = {}


def generate_key(kind: str = "ed25519"):
    if kind == "ed25519":
        return ed25519.Ed25519PrivateKey.generate()
    if kind == "rsa":
        # RSA generation is slow; one key per size is enough for the suite
        if "rsa" not in _RSA_CACHE:
            _RSA_CACHE["rsa"] = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        return _RSA_CACHE["rsa"]
    if kind == "rsa-fresh":
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if kind == "ecdsa":
        return ec.generate_private_key(ec.SECP256R1())
    if kind == "ecdsa384":
        return ec.generate_private_key(ec.SECP384R1())
    raise ValueError(kind)


def public_line(private_key, comment: str = "test@passh") -> bytes:
    line = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return line + b" " + comment.encode('ascii') + b"\n"


def write_keypair(directory, name: str = "id_test", kind: str = "ed25519", passphrase: bytes = None, fmt: str = "openssh"):
    """
    Write a private key and its .pub next to it.

    Returns:
        (private_path, public_path, private_key)
    """
    directory = Path(directory)
    key = generate_key(kind)
    if passphrase:
        encryption = serialization.BestAvailableEncryption(passphrase)
    else:
        encryption = serialization.NoEncryption()

    if fmt == "openssh":
        private_format = serialization.PrivateFormat.OpenSSH
    elif isinstance(key, ed25519.Ed25519PrivateKey):
        private_format = serialization.PrivateFormat.PKCS8
    else:
        private_format = serialization.PrivateFormat.TraditionalOpenSSL

    private_path = directory / name
    public_path = directory / (name + ".pub")
    private_path.write_bytes(key.private_bytes(serialization.Encoding.PEM, private_format, encryption))
    os.chmod(private_path, 0o600)
    public_path.write_bytes(public_line(key))
    return private_path, public_path, key


def config_for(directory, agent_socket: str = None) -> Config:
    directory = Path(directory)
    return Config(
        store_dir=directory / "store",
        ssh_dir=directory,
        agent_socket=agent_socket,
        use_agent=agent_socket is not None,
    )


def make_keyring(directory, kind: str = "ed25519", name: str = "id_test", agent_socket: str = None):
    """KeyRing with one recipient and its file signer. Returns (ring, private_key)."""
    private_path, public_path, key = write_keypair(directory, name=name, kind=kind)
    ring = KeyRing(config_for(directory, agent_socket))
    ring.add_recipient_file(public_path)
    ring.add_signer(private_path)
    return ring, key


# =============================================================================
# Fake ssh-agent
# =============================================================================

class FakeAgent:
    """
    Minimal ssh-agent speaking the real wire protocol over a unix socket.

    Usage:
        with FakeAgent([key]) as agent:
            Config(agent_socket=agent.socket_path, ...)
    """

    def __init__(self, keys):
        self.keys = {crypto.key_blob(k.public_key()): k for k in keys}
        self.sign_requests = 0
        self._dir = tempfile.mkdtemp(prefix="passh-agent-")
        self.socket_path = os.path.join(self._dir, "agent.sock")
        self._server = None
        self._thread = None

    def __enter__(self):
        agent = self

        class Handler(socketserver.StreamRequestHandler):
            def handle(self):
                while True:
                    header = self.rfile.read(4)
                    if len(header) < 4:
                        return
                    (length,) = struct.unpack("!I", header)
                    body = self.rfile.read(length)
                    reply = agent.respond(body[0], body[1:])
                    self.wfile.write(struct.pack("!I", len(reply)) + reply)
                    self.wfile.flush()

        self._server = socketserver.UnixStreamServer(self.socket_path, Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._server.shutdown()
        self._server.server_close()
        os.unlink(self.socket_path)
        os.rmdir(self._dir)

    def respond(self, msg_type: int, payload: bytes) -> bytes:
        if msg_type == 11:
            body = struct.pack("!I", len(self.keys))
            for blob in self.keys:
                body += pack_string(blob) + pack_string(b"agent-key")
            return bytes([12]) + body
        if msg_type == 13:
            blob, offset = read_string(payload, 0)
            data, offset = read_string(payload, offset)
            (flags,) = struct.unpack("!I", payload[offset:offset + 4])
            key = self.keys.get(blob)
            if key is None:
                return bytes([5])
            self.sign_requests += 1
            if isinstance(key, ed25519.Ed25519PrivateKey):
                sig_format, signature = b"ssh-ed25519", key.sign(data)
            elif isinstance(key, rsa.RSAPrivateKey) and flags & 0x02:
                sig_format = b"rsa-sha2-256"
                signature = key.sign(data, padding.PKCS1v15(), hashes.SHA256())
            elif isinstance(key, rsa.RSAPrivateKey):
                sig_format = b"ssh-rsa"
                signature = key.sign(data, padding.PKCS1v15(), hashes.SHA1())
            else:
                return bytes([5])
            return bytes([14]) + pack_string(pack_string(sig_format) + pack_string(signature))
        return bytes([5])
