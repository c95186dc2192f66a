"""
passh - Password Manager Backed by SSH Keys

Stores each secret as an encrypted file, addressed to the SSH keys you
already have. No master password and no separate key management: whoever
holds a matching private key (on disk or in ssh-agent) can read the store.

Components:
- keys.py: SSH public keys, file/agent signers and the KeyRing
- envelope.py: hybrid envelope encryption (AES-256-GCM + per-key slots)
- crypto.py: low-level primitives (one file)
- store.py: hierarchical file store (name -> <root>/name.pass)
- agent.py: minimal ssh-agent client
- cli.py: command-line interface (uses built-in argparse)

Usage:
    passh add email/work            # prompt and store
    passh generate web/github -l 24 # generate and store
    passh list
    passh get email/work
    passh delete email/work
"""

__version__ = "0.3.0"
__author__ = "passh authors"
