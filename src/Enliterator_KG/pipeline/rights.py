"""Rights record construction and resolution.

Free-form consent and licence signals from the rights inferencer are mapped
onto the closed vocabularies of :class:`RightsRecord`, and publishability and
training eligibility are derived from them. Graph-eligible facts resolve to a
rights record through :func:`resolve_rights_id`.
"""

from __future__ import annotations

import re
from collections import Counter

from .collaborators import RightsSignal
from .errors import MissingRightsError
from .models import ConsentStatus, Item, LicenseType, RightsRecord

_CONSENT_ALIASES = {
    ConsentStatus.EXPLICIT: {"explicit", "yes", "granted", "explicit_consent"},
    ConsentStatus.IMPLICIT: {"implicit", "assumed", "implicit_consent"},
    ConsentStatus.NO_CONSENT: {"no", "denied", "refused", "no_consent"},
    ConsentStatus.WITHDRAWN: {"withdrawn", "revoked"},
}

# Most specific patterns first: "ccbyncsa" must not fall through to "ccbysa".
_LICENSE_PATTERNS: tuple[tuple[LicenseType, re.Pattern[str]], ...] = (
    (LicenseType.CC_BY_NC_ND, re.compile(r"ccbyncnd")),
    (LicenseType.CC_BY_NC_SA, re.compile(r"ccbyncsa")),
    (LicenseType.CC_BY_NC, re.compile(r"ccbync|noncommercial")),
    (LicenseType.CC_BY_ND, re.compile(r"ccbynd|noderiv")),
    (LicenseType.CC_BY_SA, re.compile(r"ccbysa|creativecommonsbysa|sharealike")),
    (LicenseType.CC0, re.compile(r"cc0|creativecommons0")),
    (LicenseType.CC_BY, re.compile(r"ccby|creativecommonsby|attribution$")),
    (LicenseType.PROPRIETARY, re.compile(r"proprietary|copyright|allrightsreserved")),
    (LicenseType.PUBLIC_DOMAIN, re.compile(r"publicdomain|^pd$")),
    (LicenseType.FAIR_USE, re.compile(r"fairuse")),
    (LicenseType.CUSTOM, re.compile(r"mit|apache|gpl|bsd|isc|custom")),
    (LicenseType.CC_BY, re.compile(r"inferred|assumed|permissive")),
)

_OPEN_LICENSES = {LicenseType.CC0, LicenseType.CC_BY, LicenseType.CC_BY_SA, LicenseType.PUBLIC_DOMAIN}
_NON_COMMERCIAL = {
    LicenseType.CC_BY_NC,
    LicenseType.CC_BY_NC_SA,
    LicenseType.CC_BY_ND,
    LicenseType.CC_BY_NC_ND,
}


def map_consent_status(signal: RightsSignal) -> ConsentStatus:
    consent = (signal.consent or "").strip().lower()
    for status, aliases in _CONSENT_ALIASES.items():
        if consent in aliases:
            return status
    return ConsentStatus.IMPLICIT if signal.confidence >= 0.8 else ConsentStatus.UNKNOWN


def map_license_type(license_text: str | None) -> LicenseType:
    if not license_text:
        return LicenseType.UNSPECIFIED
    normalized = re.sub(r"[\s\-_.]", "", license_text.lower())
    for license_type, pattern in _LICENSE_PATTERNS:
        if pattern.search(normalized):
            return license_type
    return LicenseType.UNSPECIFIED


def derive_publishability(
    consent: ConsentStatus,
    license_type: LicenseType,
    *,
    quarantined: bool,
    allow_public_display: bool = False,
) -> bool:
    if quarantined or consent in (ConsentStatus.NO_CONSENT, ConsentStatus.WITHDRAWN):
        return False
    if license_type in _OPEN_LICENSES:
        return True
    if license_type in _NON_COMMERCIAL or license_type in (LicenseType.PROPRIETARY, LicenseType.CUSTOM):
        return allow_public_display
    return False


def derive_training_eligibility(
    consent: ConsentStatus,
    license_type: LicenseType,
    *,
    quarantined: bool,
    allow_training: bool = False,
) -> bool:
    if quarantined or consent in (ConsentStatus.NO_CONSENT, ConsentStatus.WITHDRAWN):
        return False
    if license_type in _OPEN_LICENSES or license_type in (LicenseType.CC_BY_NC, LicenseType.CC_BY_NC_SA):
        return True
    if license_type in (LicenseType.PROPRIETARY, LicenseType.CUSTOM):
        return allow_training
    return False


def rights_fields(item: Item, signal: RightsSignal, *, quarantined: bool) -> dict[str, object]:
    """Build the keyword arguments for a new :class:`RightsRecord`."""
    consent = map_consent_status(signal)
    license_type = map_license_type(signal.license)
    custom_terms: dict[str, object] = {
        "source_type": signal.source_type or ("unknown" if quarantined else "inferred"),
        "confidence": signal.confidence,
        "signals": dict(signal.signals),
        "attribution": signal.attribution,
        "inferred": True,
        "allow_public_display": signal.allow_public_display,
        "allow_training": signal.allow_training,
    }
    if quarantined:
        custom_terms["quarantine_reason"] = f"Low confidence: {signal.confidence}"
    return {
        "source_ids": [item.content_hash or item.pointer],
        "collection_method": signal.method or "file_system",
        "consent_status": consent,
        "license_type": license_type,
        "source_owner": signal.owner or ("unknown" if quarantined else "inferred"),
        "publishability": derive_publishability(
            consent,
            license_type,
            quarantined=quarantined,
            allow_public_display=signal.allow_public_display,
        ),
        "training_eligibility": derive_training_eligibility(
            consent,
            license_type,
            quarantined=quarantined,
            allow_training=signal.allow_training,
        ),
        "quarantined": quarantined,
        "custom_terms": custom_terms,
    }


def batch_fallback_rights_id(items: list[Item], records: list[RightsRecord]) -> str | None:
    """Return the record referenced by most items; ties go to the lowest id.

    Quarantined records are not eligible as a fallback. When no item
    references a usable record, the lowest-id usable record of the batch is
    returned, or ``None`` when the batch has none.
    """
    usable = {record.id for record in records if not record.quarantined}
    if not usable:
        return None
    counts = Counter(item.rights_id for item in items if item.rights_id in usable)
    if not counts:
        return min(usable)
    return min(counts, key=lambda rights_id: (-counts[rights_id], rights_id))


def resolve_rights_id(item: Item | None, fallback_id: str | None, *, subject: str) -> str:
    """Resolve the rights pointer for a graph-eligible fact."""
    if item is not None and item.rights_id:
        return item.rights_id
    if fallback_id:
        return fallback_id
    raise MissingRightsError(
        f"No rights record resolvable for {subject}",
        detail="Neither the source item nor the batch carries a usable rights record",
    )


__all__ = [
    "batch_fallback_rights_id",
    "derive_publishability",
    "derive_training_eligibility",
    "map_consent_status",
    "map_license_type",
    "resolve_rights_id",
    "rights_fields",
]
