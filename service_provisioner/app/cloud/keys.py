"""
SSH key pair generation.
"""

from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey


@dataclass(frozen=True)
class SSHKeyPair:
    public_key: str
    private_key: str


def _public_text(private_key, comment: str) -> str:
    public_text = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode()
    if comment:
        public_text = f"{public_text} {comment}"
    return public_text


def generate_ssh_keypair(comment: str = "") -> SSHKeyPair:
    """Fresh Ed25519 key pair in OpenSSH formats."""
    private_key = Ed25519PrivateKey.generate()

    private_text = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    return SSHKeyPair(public_key=_public_text(private_key, comment), private_key=private_text)


def load_ssh_keypair(private_text: str, comment: str = "") -> SSHKeyPair:
    """Key pair for an OpenSSH private key produced by ``generate_ssh_keypair``."""
    private_key = serialization.load_ssh_private_key(private_text.encode(), password=None)
    return SSHKeyPair(public_key=_public_text(private_key, comment), private_key=private_text)
