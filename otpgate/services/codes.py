import secrets

DEFAULT_CODE_LENGTH = 6


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Return ``length`` decimal digits drawn from the system CSPRNG."""
    if length < 1:
        raise ValueError("Code length must be at least 1")
    value = secrets.randbelow(10**length)
    return str(value).zfill(length)
