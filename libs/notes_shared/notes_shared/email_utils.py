def normalize_email(email: str) -> str:
    """Trim and lower-case an address; identities are keyed on this form."""
    if not email:
        return ""
    return email.strip().lower()


def mask_email(email: str, visible_chars: int = 2) -> str:
    if not email:
        return ""
    normalized = normalize_email(email)
    local, sep, domain = normalized.partition("@")
    if not sep:
        return "*" * len(normalized)
    if len(local) <= visible_chars:
        return "*" * len(local) + "@" + domain
    return local[:visible_chars] + "*" * (len(local) - visible_chars) + "@" + domain
