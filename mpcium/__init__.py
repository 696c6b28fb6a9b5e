"""Building blocks for an MPC threshold-signature node: logging, an encrypted key-value store with encrypted backups, Ed25519 identities and messaging."""

__version__ = "0.1.0"
__all__ = ["__version__"]