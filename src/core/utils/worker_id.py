"""Worker ID generation using coolnames for unique, memorable identifiers."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "") -> str:
    """Generate a memorable relay instance ID, e.g. 'events-to-db-swift-blue-falcon'.

    Two relays pointed at the same table are easy to tell apart in logs this way.
    """
    coolname_id = generate_slug(3)
    return f"{prefix}-{coolname_id}" if prefix else coolname_id
