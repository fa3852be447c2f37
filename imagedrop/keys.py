import secrets
import string

# URL-safe alphabet of 64 symbols; 21 characters give roughly 126 bits.
KEY_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits + "_-"
DEFAULT_KEY_SIZE = 21


def generate_key(size: int = DEFAULT_KEY_SIZE) -> str:
    """Return a random URL-safe key drawn from the system CSPRNG.

    Every call consumes fresh randomness, so two keys generated for the same
    upload share nothing and one can never be derived from the other.
    """

    if size < 1:
        raise ValueError("Key size must be at least 1")
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(size))
