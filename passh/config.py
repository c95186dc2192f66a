"""
passh - Configuration

One explicit value describing where things live. It is built once per
invocation (usually with Config.from_env()) and handed to the KeyRing and
the store; nothing here is process-global.
"""

import os
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

from .errors import NotFoundError

logger = logging.getLogger("passh.config")

STORE_DIR_NAME = ".passh"
ENTRY_EXTENSION = ".pass"

# Ed25519 first, RSA last
DEFAULT_PRIVATE_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa")
DEFAULT_PUBLIC_KEY_NAMES = tuple(name + ".pub" for name in DEFAULT_PRIVATE_KEY_NAMES)

AGENT_SOCKET_ENV = "SSH_AUTH_SOCK"
STORE_DIR_ENV = "PASSH_STORE_DIR"


def _home() -> Path:
    return Path(os.path.expanduser("~"))


@dataclass(frozen=True)
class Config:
    """Store location, key lookup tables and agent settings."""

    store_dir: Path = field(default_factory=lambda: _home() / STORE_DIR_NAME)
    ssh_dir: Path = field(default_factory=lambda: _home() / ".ssh")
    private_key_names: Tuple[str, ...] = DEFAULT_PRIVATE_KEY_NAMES
    public_key_names: Tuple[str, ...] = DEFAULT_PUBLIC_KEY_NAMES
    public_key_path: Optional[Path] = None
    private_key_path: Optional[Path] = None
    agent_socket: Optional[str] = None
    use_agent: bool = True
    extension: str = ENTRY_EXTENSION

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        """Build a Config from the process environment."""
        env = os.environ if environ is None else environ
        kwargs = {"agent_socket": env.get(AGENT_SOCKET_ENV) or None}
        if env.get(STORE_DIR_ENV):
            kwargs["store_dir"] = Path(env[STORE_DIR_ENV]).expanduser()
        return cls(**kwargs)

    def with_overrides(
        self,
        store_dir: Optional[str] = None,
        public_key: Optional[str] = None,
        private_key: Optional[str] = None,
        no_agent: bool = False,
    ) -> "Config":
        """Apply command-line flags on top of this config."""
        changes = {}
        if store_dir:
            changes["store_dir"] = Path(store_dir).expanduser()
        if public_key:
            changes["public_key_path"] = Path(public_key).expanduser()
        if private_key:
            changes["private_key_path"] = Path(private_key).expanduser()
        if no_agent:
            changes["use_agent"] = False
        return replace(self, **changes)

    @property
    def agent_enabled(self) -> bool:
        return self.use_agent and bool(self.agent_socket)

    def find_public_key(self) -> Path:
        """Explicit public key path, or the first default one that exists."""
        return self._find(self.public_key_path, self.public_key_names, "--public-key", "public")

    def find_private_key(self) -> Path:
        """Explicit private key path, or the first default one that exists."""
        return self._find(self.private_key_path, self.private_key_names, "--private-key", "private")

    def _find(self, explicit, names, flag, kind) -> Path:
        if explicit is not None:
            return explicit
        for name in names:
            candidate = self.ssh_dir / name
            if candidate.exists():
                logger.debug("Using %s key %s", kind, candidate)
                return candidate
        raise NotFoundError(f"no SSH {kind} key found in {self.ssh_dir}, specify with {flag}")
