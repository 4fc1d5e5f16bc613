"""
Cryptographic operations: canonical serialization, hashing, and
Ed25519 signatures for retention checkpoints.
"""

import hashlib
import json
import logging
import secrets
from typing import Any, Dict, Optional

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

logger = logging.getLogger(__name__)


class CryptoError(Exception):
    """Base exception for cryptographic operations."""
    pass


class KeyParseError(CryptoError):
    """Raised when key parsing fails."""
    pass


def compute_sha256_hex(data: bytes) -> str:
    """Compute SHA-256 hash and return as hex string."""
    return hashlib.sha256(data).hexdigest()


def canonicalize_event(event_data: Dict[str, Any]) -> str:
    """
    Convert event data to canonical form for hashing.
    - Sorted keys
    - No whitespace
    - Consistent JSON encoding
    """
    return json.dumps(event_data, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def compute_chain_hash(previous_hash: str, canonical: str) -> str:
    """
    Compute the chain hash linking an entry to its predecessor.

    Formula: SHA256_hex(previous_hash || canonical)
    """
    chain_input = (previous_hash + canonical).encode('utf-8')
    return compute_sha256_hex(chain_input)


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two hash strings in constant time."""
    return secrets.compare_digest(a.encode('utf-8'), b.encode('utf-8'))


# ============================================================================
# Ed25519 (PyNaCl)
# ============================================================================

def generate_signing_seed() -> str:
    """Generate a new hex-encoded Ed25519 seed."""
    return SigningKey.generate().encode(encoder=HexEncoder).decode('ascii')


def load_signing_key(seed_hex: str) -> SigningKey:
    """
    Load an Ed25519 signing key from a hex-encoded 32-byte seed.

    Raises:
        KeyParseError: If the seed is not valid hex or has the wrong length
    """
    try:
        return SigningKey(seed_hex.encode('ascii'), encoder=HexEncoder)
    except Exception as e:
        raise KeyParseError(f"Invalid Ed25519 seed: {e}")


def verify_key_hex(signing_key: SigningKey) -> str:
    """Return the hex-encoded public half of a signing key."""
    return signing_key.verify_key.encode(encoder=HexEncoder).decode('ascii')


def sign_message(message: bytes, signing_key: SigningKey) -> str:
    """Sign a message and return the detached signature as hex."""
    signed = signing_key.sign(message)
    return signed.signature.hex()


def verify_message(message: bytes, signature_hex: str, verify_key_hex_value: str) -> bool:
    """
    Verify a detached Ed25519 signature.

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        verify_key = VerifyKey(verify_key_hex_value.encode('ascii'), encoder=HexEncoder)
        verify_key.verify(message, bytes.fromhex(signature_hex))
        return True
    except BadSignatureError:
        return False
    except Exception as e:
        logger.debug(f"Ed25519 verification error: {e}")
        return False


def optional_signing_key(seed_hex: Optional[str]) -> Optional[SigningKey]:
    """Load the configured checkpoint signing key, if any."""
    if not seed_hex:
        return None
    return load_signing_key(seed_hex)
