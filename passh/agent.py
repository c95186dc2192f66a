"""
passh - SSH Agent Client

Just enough of the ssh-agent protocol (draft-miller-ssh-agent) to list the
agent's identities and ask it to sign. Private keys never leave the agent.

Every message is framed as:
    uint32 length | byte type | payload

Connections are short-lived: open, one or two requests, close.
"""

import socket
import struct
import logging
from typing import List, Tuple

from .errors import AgentUnavailable, AuthError

logger = logging.getLogger("passh.agent")

SSH_AGENT_FAILURE = 5
SSH2_AGENTC_REQUEST_IDENTITIES = 11
SSH2_AGENT_IDENTITIES_ANSWER = 12
SSH2_AGENTC_SIGN_REQUEST = 13
SSH2_AGENT_SIGN_RESPONSE = 14

SSH_AGENT_RSA_SHA2_256 = 0x02

MAX_MESSAGE_SIZE = 256 * 1024


def pack_string(data: bytes) -> bytes:
    """SSH `string`: uint32 length followed by the bytes."""
    return struct.pack("!I", len(data)) + data


def read_string(buf: bytes, offset: int) -> Tuple[bytes, int]:
    """Read an SSH `string` at `offset`; returns (value, next offset)."""
    if offset + 4 > len(buf):
        raise ValueError("truncated string length")
    (length,) = struct.unpack("!I", buf[offset:offset + 4])
    start = offset + 4
    end = start + length
    if end > len(buf):
        raise ValueError("truncated string")
    return buf[start:end], end


def blob_key_type(blob: bytes) -> str:
    """The key type name that opens every SSH public key blob."""
    key_type, _ = read_string(blob, 0)
    return key_type.decode('ascii', errors='replace')


class AgentClient:
    """
    One connection to a running ssh-agent.

    Usage:
        with AgentClient(os.environ["SSH_AUTH_SOCK"]) as agent:
            for blob, comment in agent.identities():
                ...
    """

    def __init__(self, socket_path: str, timeout: float = 5.0):
        self.socket_path = socket_path
        self.timeout = timeout
        self._sock = None

    def __enter__(self) -> "AgentClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        if not self.socket_path:
            raise AgentUnavailable("SSH_AUTH_SOCK environment variable not set")
        if not hasattr(socket, "AF_UNIX"):
            raise AgentUnavailable("unix sockets are not supported on this platform")
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError as exc:
            sock.close()
            raise AgentUnavailable(f"failed to connect to SSH agent: {exc}") from exc
        self._sock = sock

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def identities(self) -> List[Tuple[bytes, str]]:
        """List (key blob, comment) for every identity the agent holds."""
        msg_type, payload = self._request(SSH2_AGENTC_REQUEST_IDENTITIES, b"")
        if msg_type != SSH2_AGENT_IDENTITIES_ANSWER:
            raise AgentUnavailable(f"unexpected agent reply type {msg_type}")
        try:
            (count,) = struct.unpack("!I", payload[:4])
            offset = 4
            result = []
            for _ in range(count):
                blob, offset = read_string(payload, offset)
                comment, offset = read_string(payload, offset)
                result.append((blob, comment.decode('utf-8', errors='replace')))
        except (struct.error, ValueError) as exc:
            raise AgentUnavailable(f"malformed identities answer: {exc}") from exc
        logger.debug("Agent holds %d identities", len(result))
        return result

    def sign(self, blob: bytes, data: bytes, flags: int = 0) -> Tuple[str, bytes]:
        """
        Ask the agent to sign `data` with the identity `blob`.

        Returns:
            (signature format, raw signature bytes)

        Raises:
            AuthError: the agent refused (unknown key, confirmation denied)
        """
        request = pack_string(blob) + pack_string(data) + struct.pack("!I", flags)
        msg_type, payload = self._request(SSH2_AGENTC_SIGN_REQUEST, request)
        if msg_type == SSH_AGENT_FAILURE:
            raise AuthError("SSH agent refused to sign")
        if msg_type != SSH2_AGENT_SIGN_RESPONSE:
            raise AgentUnavailable(f"unexpected agent reply type {msg_type}")
        try:
            signature, _ = read_string(payload, 0)
            sig_format, offset = read_string(signature, 0)
            raw, _ = read_string(signature, offset)
        except ValueError as exc:
            raise AgentUnavailable(f"malformed sign response: {exc}") from exc
        return sig_format.decode('ascii', errors='replace'), raw

    def _request(self, msg_type: int, payload: bytes) -> Tuple[int, bytes]:
        if self._sock is None:
            raise AgentUnavailable("agent connection is not open")
        body = bytes([msg_type]) + payload
        try:
            self._sock.sendall(struct.pack("!I", len(body)) + body)
            (length,) = struct.unpack("!I", self._recv_exact(4))
            if length < 1 or length > MAX_MESSAGE_SIZE:
                raise AgentUnavailable(f"invalid agent message length {length}")
            reply = self._recv_exact(length)
        except OSError as exc:
            raise AgentUnavailable(f"SSH agent connection failed: {exc}") from exc
        return reply[0], reply[1:]

    def _recv_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining:
            chunk = self._sock.recv(remaining)
            if not chunk:
                raise AgentUnavailable("SSH agent closed the connection")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)
