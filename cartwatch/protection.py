"""Bot-protection (WAF / anti-bot interstitial) signature matching."""

from __future__ import annotations

# Checked in order; the first vendor with a matching marker wins.
BOT_PROTECTION_SIGNATURES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Cloudflare", ("Pardon Our Interruption", "challenge-platform", "cf_clearance")),
    ("Incapsula", ("Incapsula", "incident_id", "_Incapsula_Resource", "distil_referrer")),
    ("AWS WAF", ("AWS WAF", "akamai_validation")),
    ("F5 BIG-IP", ("F5 BIG-IP", "BIG-IP")),
)


def detect_bot_protection(html: str | None) -> str | None:
    """Return the protection vendor whose markers appear in *html*, if any.

    Matching is a case-sensitive substring test.
    """

    if not html:
        return None
    for vendor, patterns in BOT_PROTECTION_SIGNATURES:
        if any(pattern in html for pattern in patterns):
            return vendor
    return None


__all__ = ["BOT_PROTECTION_SIGNATURES", "detect_bot_protection"]
