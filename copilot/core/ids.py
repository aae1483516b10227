"""ID generation utilities."""
import hashlib
import uuid


def new_id(prefix: str) -> str:
    """Generate a UUID4-based ID with prefix."""
    return f"{prefix}{uuid.uuid4().hex}"


def derive_turn_key(text: str, scope: str = "") -> str:
    """Derive a message idempotency key from normalized text.

    The key carries no time component; repeats are only treated as duplicates
    while the earlier message is inside the idempotency window.
    """
    normalized = " ".join(text.lower().split())
    digest = hashlib.sha256(f"{scope}|{normalized}".encode("utf-8")).hexdigest()
    return f"turn_{digest[:32]}"
