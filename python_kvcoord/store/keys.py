"""
Key formatting for backend paths
"""

SEPARATOR = "/"


def format_key(key: str) -> str:
    """Strip a single leading separator; keys are otherwise opaque."""
    if key.startswith(SEPARATOR):
        return key[1:]
    return key
