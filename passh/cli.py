"""
passh - Command Line Interface

    passh add NAME [-g] [-l N]      store a secret (prompted, or generated)
    passh get NAME [-c]             print (or copy) a secret
    passh list                      list entry names
    passh delete NAME [-f]          remove an entry
    passh generate NAME [-l N] [-n] generate, store and print a password
    passh setup                     check SSH keys and agent
    passh version

Global flags: --store PATH, --public-key PATH, --private-key PATH, --no-agent, -v.
Exit code is 0 on success and 1 on any error.
"""

import os
import sys
import getpass
import logging
import argparse
import shutil
import subprocess

import pyperclip

from . import __version__, crypto
from .agent import AgentClient
from .config import Config
from .errors import AgentUnavailable, AuthError, NotFoundError, PasshError, PassphraseRequired, ValidationError
from .keys import KeyRing
from .store import CredentialStore

logger = logging.getLogger("passh.cli")

DEFAULT_LENGTH = 16


# =============================================================================
# Prompts
# =============================================================================

def confirm(prompt: str) -> bool:
    """Ask a y/N question; anything but y/yes is no."""
    return input(prompt).strip().lower() in ('y', 'yes')


def read_new_secret(name: str) -> str:
    secret = getpass.getpass(f"Enter password for '{name}': ")
    if not secret:
        raise ValidationError("password must not be empty")
    if getpass.getpass("Confirm password: ") != secret:
        raise ValidationError("passwords do not match")
    return secret


# =============================================================================
# Key Loading
# =============================================================================

def load_keyring(config: Config, prompt=None) -> KeyRing:
    """
    Build the KeyRing for this invocation.

    The private key is first tried without a passphrase; if it needs one the
    operator is asked exactly once and a second failure is fatal.
    """
    ring = KeyRing(config)
    try:
        ring.add_recipient_file(config.find_public_key())
        private_key = config.find_private_key()
    except NotFoundError as exc:
        # a key held only by the agent needs nothing but the .pub on disk
        if ring.recipients and ring.has_agent_identity():
            logger.info("No private key file, using SSH agent identity")
            return ring
        raise NotFoundError(
            f"{exc}\nCreate a key with 'ssh-keygen -t ed25519' or run 'passh setup'."
        ) from exc
    add_file_signer(ring, private_key, prompt)
    return ring


def add_file_signer(ring: KeyRing, private_key, prompt=None) -> None:
    prompt = prompt or getpass.getpass
    try:
        ring.add_signer(private_key)
    except PassphraseRequired:
        passphrase = prompt(f"Enter passphrase for key '{private_key}': ")
        ring.add_signer(private_key, passphrase.encode('utf-8'))


# =============================================================================
# Commands
# =============================================================================

def cmd_add(args, store: CredentialStore) -> int:
    if args.generate:
        secret = crypto.generate_password(args.length)
        print(f"Generated password for '{args.name}': {secret}")
    else:
        secret = read_new_secret(args.name)
    store.add(args.name, secret)
    print(f"✓ Added password '{args.name}'")
    return 0


def cmd_get(args, store: CredentialStore) -> int:
    try:
        return _show_secret(args, store)
    except AuthError as exc:
        # The agent may hold the key without being able to open this entry;
        # fall back to the key file once.
        ring = store.keyring
        if ring is None or any(s.kind == "file" for s in ring.signers):
            raise
        logger.info("Agent could not open '%s', retrying with key file", args.name)
        ring.prefer_agent = False
        try:
            add_file_signer(ring, ring.config.find_private_key())
        except NotFoundError:
            raise exc
        return _show_secret(args, store)


def _show_secret(args, store: CredentialStore) -> int:
    with store.open(args.name) as secret:
        text = secret.decode('utf-8', errors='replace')
        if args.copy:
            try:
                pyperclip.copy(text)
            except pyperclip.PyperclipException as exc:
                raise PasshError(f"clipboard not available: {exc}") from exc
            print(f"✓ Password for '{args.name}' copied to clipboard!")
        else:
            print(text)
    return 0


def cmd_list(args, store: CredentialStore) -> int:
    for name in store.list():
        print(name)
    return 0


def cmd_delete(args, store: CredentialStore) -> int:
    if not store.exists(args.name):
        raise NotFoundError(f"password '{args.name}' not found")
    if not args.force and not confirm(f"Are you sure you want to delete password '{args.name}'? (y/N): "):
        print("Deletion cancelled")
        return 0
    store.delete(args.name)
    print(f"✓ Deleted password '{args.name}'")
    return 0


def cmd_generate(args, store: CredentialStore) -> int:
    secret = crypto.generate_password(args.length, use_symbols=not args.no_symbols)
    store.add(args.name, secret)
    print(secret)
    return 0


def cmd_version(args, config: Config) -> int:
    print(f"passh {__version__} - SSH-backed password manager")
    print("License: MIT")
    return 0


def cmd_setup(args, config: Config) -> int:
    """Check for ssh, SSH keys, the agent and the store directory."""
    print("passh Setup")
    print("=" * 40)

    print("Checking for SSH installation... ", end="")
    ssh_path = shutil.which("ssh")
    if not ssh_path:
        print("✗ Not found")
        print("\nSSH is required. Install it with one of:")
        print("  - Debian/Ubuntu: sudo apt-get install openssh-client")
        print("  - Fedora/RHEL:   sudo dnf install openssh-clients")
        print("  - macOS:         brew install openssh")
        raise NotFoundError("SSH not installed")
    print(f"✓ Found ({ssh_path})")

    print("Checking for existing SSH keys... ", end="")
    try:
        private_key = config.find_private_key()
        print(f"✓ Found ({private_key})")
    except NotFoundError:
        print("✗ Not found")
        if not confirm("\nWould you like to generate a new Ed25519 SSH key? [y/N]: "):
            print("\nGenerate a key with 'ssh-keygen -t ed25519' before using passh.")
            raise NotFoundError("no SSH keys available")
        _generate_ssh_key(config)

    print("Checking for SSH agent... ", end="")
    if not config.agent_socket:
        print("✗ Not running")
        print("\nWithout the agent you may be asked for your key passphrase each time.")
        print("To start it:")
        print("  eval `ssh-agent`")
        print("  ssh-add")
    elif not config.use_agent:
        print("- Disabled (--no-agent)")
    else:
        try:
            with AgentClient(config.agent_socket) as agent:
                count = len(agent.identities())
        except AgentUnavailable as exc:
            print(f"✗ Not reachable ({exc})")
        else:
            print(f"✓ Running ({count} key(s) loaded)")
            if count == 0 and confirm("\nWould you like to add your key to the SSH agent? [y/N]: "):
                _run(["ssh-add"], "failed to add key to SSH agent")

    print("Checking store directory... ", end="")
    if config.store_dir.is_dir():
        print(f"✓ {config.store_dir}")
    else:
        print(f"- {config.store_dir} (created on first use)")

    print("\n✓ passh setup complete!")
    print("Try: passh add example/password")
    return 0


def _generate_ssh_key(config: Config) -> None:
    os.makedirs(config.ssh_dir, mode=0o700, exist_ok=True)
    print("Generating new Ed25519 key...")
    _run(["ssh-keygen", "-t", "ed25519", "-f", str(config.ssh_dir / "id_ed25519")],
         "failed to generate SSH key")
    print("✓ Key generated successfully")


def _run(command, error: str) -> None:
    try:
        subprocess.run(command, check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise PasshError(f"{error}: {exc}") from exc


# =============================================================================
# Entry Point
# =============================================================================

# name -> (handler, needs keys)
COMMANDS = {
    "add": (cmd_add, True),
    "get": (cmd_get, True),
    "list": (cmd_list, False),
    "delete": (cmd_delete, False),
    "generate": (cmd_generate, True),
}

CONFIG_COMMANDS = {
    "setup": cmd_setup,
    "version": cmd_version,
}


class ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with 1, like every other failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="passh",
        description="A terminal password manager backed by SSH keys",
    )
    parser.add_argument("--store", metavar="PATH", help="password store directory (default: ~/.passh)")
    parser.add_argument("--public-key", metavar="PATH", help="SSH public key (default: ~/.ssh/id_ed25519.pub)")
    parser.add_argument("--private-key", metavar="PATH", help="SSH private key (default: ~/.ssh/id_ed25519)")
    parser.add_argument("--no-agent", action="store_true", help="don't use the SSH agent even if available")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")

    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p_add = sub.add_parser("add", help="Add a new password")
    p_add.add_argument("name", metavar="NAME")
    p_add.add_argument("-g", "--generate", action="store_true", help="generate a random password")
    p_add.add_argument("-l", "--length", type=int, default=DEFAULT_LENGTH, help="length of generated password")

    p_get = sub.add_parser("get", help="Retrieve a password")
    p_get.add_argument("name", metavar="NAME")
    p_get.add_argument("-c", "--copy", action="store_true", help="copy to clipboard instead of printing")

    sub.add_parser("list", help="List all passwords")

    p_delete = sub.add_parser("delete", help="Delete a password")
    p_delete.add_argument("name", metavar="NAME")
    p_delete.add_argument("-f", "--force", action="store_true", help="don't ask for confirmation")

    p_gen = sub.add_parser("generate", help="Generate and store a password")
    p_gen.add_argument("name", metavar="NAME")
    p_gen.add_argument("-l", "--length", type=int, default=DEFAULT_LENGTH, help="password length")
    p_gen.add_argument("-n", "--no-symbols", action="store_true", help="don't include symbols")

    sub.add_parser("setup", help="Check SSH keys and agent")
    sub.add_parser("version", help="Display version information")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv=None, environ=None) -> int:
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as exc:
        # --help exits 0, usage errors 1
        return exc.code or 0
    configure_logging(args.verbose)

    config = Config.from_env(environ).with_overrides(
        store_dir=args.store,
        public_key=args.public_key,
        private_key=args.private_key,
        no_agent=args.no_agent,
    )

    try:
        if args.command in CONFIG_COMMANDS:
            return CONFIG_COMMANDS[args.command](args, config)

        handler, needs_keys = COMMANDS[args.command]
        keyring = load_keyring(config) if needs_keys else None
        store = CredentialStore.from_config(config, keyring)
        return handler(args, store)
    except PasshError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (KeyboardInterrupt, EOFError):
        print("\nAborted.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
