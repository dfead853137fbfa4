"""Declarative mapping from upstream property bags to canonical contact fields.

Upstream property names drift over time, so every canonical field lists the
upstream synonyms it accepts. Schema drift is then a data change in the tables
below rather than a code change.

``normalize_contact`` is pure: the same raw record always yields the same
``NormalizedContact``, which is what makes re-syncing idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from ..errors import ValidationError

# Canonical field -> upstream synonyms, first present wins.
CANONICAL_FIELDS: dict[str, tuple[str, ...]] = {
    "first_name": ("firstname", "first_name", "firstName"),
    "last_name": ("lastname", "last_name", "lastName"),
    "email": ("email", "work_email"),
    "phone": ("phone", "mobilephone", "phone_number"),
    "job_title": ("jobtitle", "job_title"),
    "linkedin_url": ("linkedin_profile_url", "linkedin_profile", "hs_linkedin_url"),
    "company": ("company", "company_name"),
    "website": ("website", "company_website"),
    "industry": ("business_category___industry_of_interest", "industry"),
    "naics_code": ("naics_code",),
    "employee_count": ("numemployees", "number_of_employees"),
    "address": ("address", "street_address"),
    "city": ("city",),
    "state": ("state",),
    "zip_code": ("zip", "postal_code"),
    "lead_source": ("lead_source", "hs_analytics_source"),
    "contact_type": ("contact_type",),
}

# Every upstream flag that means "do not call" -> (reason, property carrying the date).
# First truthy flag in this order supplies the reason.
_INTERNAL_DNC_REASON = "Marked as DNC upstream (Do Not Call property)"
DNC_FLAG_DETAILS: dict[str, tuple[str, str]] = {
    "hs_do_not_call": (_INTERNAL_DNC_REASON, "dnc_date"),
    "do_not_call": (_INTERNAL_DNC_REASON, "dnc_date"),
    "dnc_flag": (_INTERNAL_DNC_REASON, "dnc_date"),
    "hs_email_optout": (_INTERNAL_DNC_REASON, "dnc_date"),
    "optout": ("Marketing opt-out", "optout_date"),
    "federal_dnc": ("Federal DNC Registry", "federal_dnc_date"),
    "state_dnc": ("State DNC Registry", "state_dnc_date"),
    "wireless_dnc": ("Wireless DNC Registry", "wireless_dnc_date"),
    "dnc___seller_outreach": ("Seller outreach DNC list", "dnc_date"),
    "dnc___buyer_outreach": ("Buyer outreach DNC list", "dnc_date"),
    "dnc___cre_outreach": ("CRE outreach DNC list", "dnc_date"),
    "dnc___exf_outreach": ("EXF outreach DNC list", "dnc_date"),
}
DNC_FLAGS: tuple[str, ...] = tuple(DNC_FLAG_DETAILS)

# Enumerated properties whose value (not truthiness) means "do not call".
DNC_VALUE_FLAGS: dict[str, str] = {"hs_marketable_status": "NOT_OPTED_IN"}

DNC_REASON_PROPERTY = "dnc_reason"
DNC_DATE_PROPERTIES: tuple[str, ...] = tuple(
    sorted({date_prop for _, date_prop in DNC_FLAG_DETAILS.values()})
)

# Upstream cold-lead list flag -> protection tag.
PROTECTION_TAG_FLAGS: dict[str, str] = {
    "seller_cold_lead": "seller-cold-lead",
    "buyer_cold_lead": "buyer-cold-lead",
    "cre_cold_lead": "cre-cold-lead",
    "exf_cold_lead": "exf-cold-lead",
}

LIFECYCLE_STAGE_PROPERTY = "lifecyclestage"
DEFAULT_LIFECYCLE_STAGE = "lead"
LIFECYCLE_STAGES = ("lead", "prospect", "customer", "evangelist")
LIFECYCLE_STAGE_MAP: dict[str, str] = {
    "subscriber": "lead",
    "lead": "lead",
    "marketingqualifiedlead": "prospect",
    "salesqualifiedlead": "prospect",
    "opportunity": "prospect",
    "customer": "customer",
    "evangelist": "evangelist",
}

# Upstream contact_type -> campaign types. A contact can belong to several.
CONTACT_TYPE_CAMPAIGNS: dict[str, tuple[str, ...]] = {
    "Buyer": ("Buyer",),
    "Buyer & Seller": ("Buyer", "Seller"),
    "Seller": ("Seller",),
    "Secondary Seller": ("Seller",),
    "CRE Buyer": ("CRE",),
    "CRE Corporate Services": ("CRE",),
    "CRE Franchise Services": ("CRE",),
    "CRE Investor": ("CRE",),
    "CRE Landlord": ("CRE",),
    "CRE Power Partner": ("CRE",),
    "CRE Referral": ("CRE",),
    "CRE Seller": ("CRE",),
    "CRE Tenant": ("CRE",),
    "EXF Client": ("Exit Factor",),
    "EXF Franchisees": ("Exit Factor",),
    "Corporate Partner": (),
    "Other": (),
    "Referral Partner": (),
}

CREATED_PROPERTIES = ("createdate",)
MODIFIED_PROPERTIES = ("lastmodifieddate", "hs_lastmodifieddate")
_SYSTEM_PROPERTIES = frozenset(("hs_object_id",) + CREATED_PROPERTIES + MODIFIED_PROPERTIES)

TRUTHY_STRINGS = frozenset({"true", "yes", "1"})

DNC_CALLABLE = "callable"
DNC_DNC = "dnc"


@dataclass(frozen=True)
class NormalizedContact:
    external_id: str | None
    fields: dict[str, str]
    lifecycle_stage: str = DEFAULT_LIFECYCLE_STAGE
    dnc_status: str = DNC_CALLABLE
    dnc_reason: str | None = None
    dnc_date: datetime | None = None
    protection_tags: frozenset[str] = frozenset()
    campaign_types: tuple[str, ...] = ()
    custom_fields: dict[str, Any] = field(default_factory=dict)
    upstream_updated_at: datetime | None = None
    validation_issues: tuple[dict[str, str], ...] = ()

    @property
    def email(self) -> str:
        return self.fields.get("email", "")


def is_truthy(value: Any) -> bool:
    """Upstream flags arrive as bools, ints or strings like "Yes"/"true"/"1"."""
    if value is True:
        return True
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _first_present(props: Mapping[str, Any], names: Iterable[str]) -> tuple[str | None, Any]:
    for name in names:
        if name in props and _present(props[name]):
            return name, props[name]
    return None, None


def _clean_email(value: str) -> str:
    email = value.strip().lower()
    if email.count("@") != 1:
        raise ValidationError("email", value, "expected exactly one '@'")
    local, domain = email.split("@", 1)
    if not local or not domain:
        raise ValidationError("email", value, "empty local part or domain")
    if any(ch.isspace() for ch in email):
        raise ValidationError("email", value, "contains whitespace")
    return email


def _parse_timestamp(value: Any) -> datetime | None:
    if not _present(value):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def derive_dnc(props: Mapping[str, Any]) -> tuple[str, str | None, datetime | None]:
    """OR across every known do-not-call flag. Returns (status, reason, date)."""
    for flag, (reason, date_property) in DNC_FLAG_DETAILS.items():
        if not is_truthy(props.get(flag)):
            continue
        if reason == _INTERNAL_DNC_REASON and _present(props.get(DNC_REASON_PROPERTY)):
            reason = str(props[DNC_REASON_PROPERTY]).strip()
        return DNC_DNC, reason, _parse_timestamp(props.get(date_property))
    for prop, marker in DNC_VALUE_FLAGS.items():
        value = props.get(prop)
        if isinstance(value, str) and value.strip().upper() == marker:
            reason = props.get(DNC_REASON_PROPERTY)
            reason = str(reason).strip() if _present(reason) else _INTERNAL_DNC_REASON
            return DNC_DNC, reason, _parse_timestamp(props.get("dnc_date"))
    return DNC_CALLABLE, None, None


def derive_dnc_status(props: Mapping[str, Any]) -> str:
    return derive_dnc(props)[0]


def derive_lifecycle_stage(value: Any) -> str:
    if not _present(value):
        return DEFAULT_LIFECYCLE_STAGE
    return LIFECYCLE_STAGE_MAP.get(str(value).strip().lower(), DEFAULT_LIFECYCLE_STAGE)


def derive_protection_tags(props: Mapping[str, Any]) -> frozenset[str]:
    return frozenset(tag for flag, tag in PROTECTION_TAG_FLAGS.items() if is_truthy(props.get(flag)))


def parse_contact_type(contact_type: str | None) -> tuple[str, ...]:
    """Map an upstream contact_type to campaign types, falling back to keywords."""
    if not contact_type:
        return ()
    if contact_type in CONTACT_TYPE_CAMPAIGNS:
        return CONTACT_TYPE_CAMPAIGNS[contact_type]

    lower = contact_type.lower()
    types: list[str] = []
    if "buyer" in lower and "cre" not in lower:
        types.append("Buyer")
    if "seller" in lower and "cre" not in lower:
        types.append("Seller")
    if "cre" in lower:
        types.append("CRE")
    if "exf" in lower or "exit factor" in lower:
        types.append("Exit Factor")
    return tuple(types)


def _property_bag(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    props = raw.get("properties")
    if isinstance(props, Mapping):
        return props
    return raw


def _external_id(raw: Mapping[str, Any], props: Mapping[str, Any]) -> str | None:
    for value in (raw.get("id"), props.get("hs_object_id")):
        if _present(value) and not isinstance(value, Mapping):
            return str(value).strip()
    return None


def normalize_contact(raw: Mapping[str, Any]) -> NormalizedContact:
    """Convert one raw upstream record into canonical contact fields."""
    props = _property_bag(raw)
    consumed: set[str] = set()
    fields: dict[str, str] = {}
    issues: list[dict[str, str]] = []

    for canonical, synonyms in CANONICAL_FIELDS.items():
        candidates = synonyms + ((canonical,) if canonical not in synonyms else ())
        consumed.update(candidates)
        _, value = _first_present(props, candidates)
        if value is None:
            fields[canonical] = ""
            continue
        text = str(value).strip()
        if canonical == "email":
            try:
                text = _clean_email(text)
            except ValidationError as exc:
                issues.append({"field": exc.field, "value": str(exc.value), "reason": exc.reason})
                text = ""
        fields[canonical] = text

    consumed.update(DNC_FLAGS)
    consumed.update(DNC_VALUE_FLAGS)
    consumed.update(DNC_DATE_PROPERTIES)
    consumed.add(DNC_REASON_PROPERTY)
    consumed.update(PROTECTION_TAG_FLAGS)
    consumed.add(LIFECYCLE_STAGE_PROPERTY)
    consumed.update(_SYSTEM_PROPERTIES)

    dnc_status, dnc_reason, dnc_date = derive_dnc(props)

    _, modified = _first_present(props, MODIFIED_PROPERTIES)
    if modified is None:
        modified = raw.get("updatedAt")

    custom_fields = {
        key: value
        for key, value in sorted(props.items())
        if key not in consumed and _present(value)
    }

    return NormalizedContact(
        external_id=_external_id(raw, props),
        fields=fields,
        lifecycle_stage=derive_lifecycle_stage(props.get(LIFECYCLE_STAGE_PROPERTY)),
        dnc_status=dnc_status,
        dnc_reason=dnc_reason,
        dnc_date=dnc_date,
        protection_tags=derive_protection_tags(props),
        campaign_types=parse_contact_type(fields.get("contact_type")),
        custom_fields=custom_fields,
        upstream_updated_at=_parse_timestamp(modified),
        validation_issues=tuple(issues),
    )


def build_property_list(extra: Iterable[str] = ()) -> list[str]:
    """Upstream properties to request so every canonical field can be filled."""
    names: set[str] = set()
    for synonyms in CANONICAL_FIELDS.values():
        names.update(synonyms)
    names.update(DNC_FLAGS)
    names.update(DNC_VALUE_FLAGS)
    names.update(DNC_DATE_PROPERTIES)
    names.add(DNC_REASON_PROPERTY)
    names.update(PROTECTION_TAG_FLAGS)
    names.add(LIFECYCLE_STAGE_PROPERTY)
    names.update(CREATED_PROPERTIES)
    names.update(MODIFIED_PROPERTIES)
    names.update(p for p in extra if p)
    # camelCase synonyms are only used by non-upstream channels
    return sorted(n for n in names if n == n.lower())
