"""
SSH key pair generation and fingerprinting.
"""
import base64
import hashlib
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from fluxstrap.errors import ConfigError


ECDSA_CURVES = {
    'p256': ec.SECP256R1,
    'p384': ec.SECP384R1,
    'p521': ec.SECP521R1,
}


@dataclass
class KeyPair:
    """An OpenSSH encoded key pair."""
    private_key: bytes
    public_key: str
    fingerprint: str


def ssh_fingerprint(public_key: str) -> str:
    """
    Compute the OpenSSH SHA256 fingerprint of an authorized_keys style line.

    Args:
        public_key: e.g. "ssh-ed25519 AAAAC3Nz... comment"

    Returns:
        Fingerprint string, e.g. "SHA256:Yk0n..."

    Raises:
        ValueError: If the key line cannot be parsed
    """
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise ValueError(f"Malformed public key: {public_key[:40]!r}")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except ValueError as e:
        raise ValueError(f"Malformed public key body: {e}") from e
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode('ascii').rstrip('=')


def generate_key_pair(algorithm: str = 'ed25519', rsa_bits: int = 4096, ecdsa_curve: str = 'p384') -> KeyPair:
    """
    Generate a new SSH key pair.

    Args:
        algorithm: ed25519, rsa or ecdsa
        rsa_bits: Key size for rsa
        ecdsa_curve: Curve name for ecdsa (p256, p384, p521)

    Returns:
        KeyPair with OpenSSH private key, public key line and fingerprint
    """
    if algorithm == 'ed25519':
        private = ed25519.Ed25519PrivateKey.generate()
    elif algorithm == 'rsa':
        private = rsa.generate_private_key(public_exponent=65537, key_size=rsa_bits)
    elif algorithm == 'ecdsa':
        if ecdsa_curve not in ECDSA_CURVES:
            raise ConfigError(f"Unknown ECDSA curve: {ecdsa_curve}")
        private = ec.generate_private_key(ECDSA_CURVES[ecdsa_curve]())
    else:
        raise ConfigError(f"Unknown key algorithm: {algorithm}")

    private_bytes = private.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_line = private.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode('ascii')

    return KeyPair(
        private_key=private_bytes,
        public_key=public_line,
        fingerprint=ssh_fingerprint(public_line),
    )
