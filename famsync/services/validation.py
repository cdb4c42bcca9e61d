"""Pure format validators.

These never touch the store, so callers can use them for inline feedback
before attempting a write.  Each ``validate_*`` returns the full list of
violations (empty when valid).
"""

FAMILY_NAME_MAX_LENGTH = 50
DISPLAY_NAME_MAX_LENGTH = 50
IDENTITY_HASH_MIN_LENGTH = 10

CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CODE_MIN_LENGTH = 6
CODE_MAX_LENGTH = 8

_CODE_CHARS = frozenset(CODE_ALPHABET)


def normalize_family_code(code: str) -> str:
    """Return the stored form of a join code (trimmed, uppercase)."""
    return code.strip().upper()


def _is_code_char(ch: str) -> bool:
    # Per character, so "ß" (uppercased to "SS") cannot slip through
    return ch.upper() in _CODE_CHARS


def is_valid_family_code_format(code: str) -> bool:
    """True if *code* has 6-8 characters, all in ``A-Z0-9`` (case-insensitive)."""
    if not CODE_MIN_LENGTH <= len(code) <= CODE_MAX_LENGTH:
        return False
    return all(_is_code_char(ch) for ch in code)


def validate_family_code(code: str) -> list[str]:
    errors: list[str] = []
    if not CODE_MIN_LENGTH <= len(code) <= CODE_MAX_LENGTH:
        errors.append(f"Family code must be {CODE_MIN_LENGTH}-{CODE_MAX_LENGTH} characters")
    if code and not all(_is_code_char(ch) for ch in code):
        errors.append("Family code must contain only letters A-Z and digits 0-9")
    return errors


def validate_family_name(name: str) -> list[str]:
    errors: list[str] = []
    trimmed = name.strip()
    if not trimmed:
        errors.append("Family name cannot be empty")
    elif len(trimmed) > FAMILY_NAME_MAX_LENGTH:
        errors.append(f"Family name cannot exceed {FAMILY_NAME_MAX_LENGTH} characters")
    return errors


def validate_display_name(display_name: str) -> list[str]:
    errors: list[str] = []
    trimmed = display_name.strip()
    if not trimmed:
        errors.append("Display name cannot be empty")
    elif len(trimmed) > DISPLAY_NAME_MAX_LENGTH:
        errors.append(f"Display name cannot exceed {DISPLAY_NAME_MAX_LENGTH} characters")
    return errors


def validate_identity_hash(identity_hash: str) -> list[str]:
    errors: list[str] = []
    if not identity_hash:
        errors.append("Identity hash cannot be empty")
    elif len(identity_hash) < IDENTITY_HASH_MIN_LENGTH:
        errors.append("Invalid identity hash format")
    return errors


def is_valid_family_name(name: str) -> bool:
    return not validate_family_name(name)


def is_valid_display_name(display_name: str) -> bool:
    return not validate_display_name(display_name)


def is_valid_identity_hash(identity_hash: str) -> bool:
    return not validate_identity_hash(identity_hash)
