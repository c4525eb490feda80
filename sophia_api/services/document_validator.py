"""Field validation, transforms and free-text extraction for document templates."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from sophia_api.services.document_templates import DocumentField, DocumentTemplate, compute_missing_fields, is_empty

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_IN_TEXT = re.compile(r"https?://[^\s,]+")
EMAIL_IN_TEXT = re.compile(r"[^\s@,;:]+@[^\s@,;:]+\.[A-Za-z]{2,}")
PHONE_IN_TEXT = re.compile(r"\+?\d[\d \-()]{7,}\d")
PERCENT_IN_TEXT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
MIN_PHONE_DIGITS = 8
DATE_FORMATS = ("%d/%m/%Y", "%d.%m.%Y", "%Y-%m-%d")

BANK_NAMES_BY_URL_KEYWORD = (
    ("remuproperties", "Remu Team"),
    ("remu", "Remu Team"),
    ("gordian", "Gordian Team"),
    ("altia", "Altia Team"),
    ("altamira", "Altamira Team"),
    ("astrea", "Astrea Team"),
    ("debtsale", "Debt Sale Team"),
)


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


@dataclass
class ValidationReport:
    errors: list[FieldError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def messages(self) -> list[str]:
        return [error.message for error in self.errors]


def mask_phone_number(phone: Optional[str]) -> Optional[str]:
    """Hide the digit group after the country/area code.

    "+357 99 07 67 32" -> "+357 99 ** 67 32", "99 07 67 32" -> "99 ** 67 32".
    Numbers with fewer than three groups are returned unchanged.
    """
    if not phone:
        return phone
    parts = phone.strip().split()
    if len(parts) < 3:
        return " ".join(parts)
    mask_index = 2 if parts[0].startswith("+") else 1
    if len(parts) > mask_index and len(parts[mask_index]) >= 2:
        parts[mask_index] = "**"
    return " ".join(parts)


def extract_bank_name_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    lowered = url.lower()
    for keyword, bank_name in BANK_NAMES_BY_URL_KEYWORD:
        if keyword in lowered:
            return bank_name
    return None


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_valid_date(value: str) -> bool:
    for fmt in DATE_FORMATS:
        try:
            datetime.strptime(value.strip(), fmt)
            return True
        except ValueError:
            continue
    return False


def _is_number(value: Any) -> bool:
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).replace(",", "").strip())
        return True
    except ValueError:
        return False


def validate_field(item: DocumentField, value: Any) -> list[str]:
    """Return the error messages for one collected value."""
    errors: list[str] = []
    text = str(value).strip()
    label = item.label

    if item.type == "email" and not EMAIL_PATTERN.match(text):
        errors.append(f"Invalid email format for {label}")
    elif item.type == "url" and not _is_valid_url(text):
        errors.append(f"Invalid URL format for {label}")
    elif item.type == "phone":
        # Masked positions still count as digits.
        digits = re.sub(r"[^\d*]", "", text)
        if len(digits) < MIN_PHONE_DIGITS:
            errors.append(f"Invalid phone number for {label} (too few digits)")
    elif item.type == "date" and not _is_valid_date(text):
        errors.append(f"Invalid date for {label} (use DD/MM/YYYY)")
    elif item.type == "number" and not _is_number(value):
        errors.append(f"{label} must be a number")
    elif item.type == "select" and item.options and text.lower() not in {o.lower() for o in item.options}:
        errors.append(f"{label} must be one of: {', '.join(item.options)}")

    rules = item.validation
    if rules is not None:
        if rules.pattern and not re.match(rules.pattern, text):
            errors.append(f"Invalid format for {label}")
        if rules.min_length is not None and len(text) < rules.min_length:
            errors.append(f"{label} must be at least {rules.min_length} characters")
        if rules.max_length is not None and len(text) > rules.max_length:
            errors.append(f"{label} must be at most {rules.max_length} characters")

    return errors


def validate_fields(template: DocumentTemplate, collected: dict[str, Any]) -> ValidationReport:
    """Validate every collected, visible field. Missing values are not errors here."""
    report = ValidationReport()
    for item in template.visible_fields(collected):
        value = collected.get(item.name)
        if is_empty(value):
            continue
        errors = validate_field(item, value)
        report.errors.extend(FieldError(field=item.name, message=message) for message in errors)
    for name in collected:
        if template.get_field(name) is None:
            report.warnings.append(f"Unknown field ignored: {name}")
    return report


def apply_transforms(template: DocumentTemplate, collected: dict[str, Any]) -> dict[str, Any]:
    processed = dict(collected)
    for item in template.fields:
        value = processed.get(item.name)
        if item.validation and item.validation.mask_phone and isinstance(value, str) and value.strip():
            processed[item.name] = mask_phone_number(value)

    if template.id.startswith("reg_banks") and processed.get("property_link") and is_empty(processed.get("bank_name")):
        bank_name = extract_bank_name_from_url(str(processed["property_link"]))
        if bank_name:
            processed["bank_name"] = bank_name
    return processed


def _named_values(template: DocumentTemplate, message: str) -> dict[str, str]:
    found: dict[str, str] = {}
    for line in message.splitlines():
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        key = key.strip().strip("-*• ").lower()
        value = value.strip()
        if not key or not value:
            continue
        for item in template.fields:
            if key in (item.label.lower(), item.name.lower(), item.name.replace("_", " ").lower()):
                found[item.name] = value
                break
    return found


def extract_fields(
    template: DocumentTemplate,
    message: str,
    collected: Optional[dict[str, Any]] = None,
    invalid: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Pull field values out of a free-text reply.

    Explicit "Label: value" lines win. URLs, emails, phone numbers and a
    percentage are then assigned by type to fields still lacking a value
    or holding one that failed validation. A bare reply fills the only
    field left to answer when exactly one is missing or invalid.
    """
    collected = collected or {}
    message = message or ""
    invalid = [name for name in (invalid or []) if template.get_field(name) is not None]
    extracted: dict[str, Any] = _named_values(template, message)

    def needs_value(item: DocumentField) -> bool:
        return item.name in invalid or is_empty(collected.get(item.name))

    def open_fields(field_type: str) -> list[DocumentField]:
        return [
            item
            for item in template.fields
            if item.type == field_type and item.name not in extracted and needs_value(item)
        ]

    urls = URL_IN_TEXT.findall(message)
    for item, url in zip(open_fields("url"), (u for u in urls if u not in extracted.values())):
        extracted[item.name] = url.rstrip(".")

    emails = EMAIL_IN_TEXT.findall(message)
    for item, email in zip(open_fields("email"), (e for e in emails if e not in extracted.values())):
        extracted[item.name] = email

    without_urls = URL_IN_TEXT.sub(" ", message)
    phones = [p.strip() for p in PHONE_IN_TEXT.findall(without_urls)]
    phones = [p for p in phones if p not in extracted.values()]
    for item, phone in zip(open_fields("phone"), phones):
        extracted[item.name] = phone

    percent = PERCENT_IN_TEXT.search(message)
    if percent:
        fee_fields = [item for item in open_fields("number") if "fee" in item.name]
        if fee_fields:
            extracted[fee_fields[0].name] = percent.group(1)

    if not extracted:
        pending = compute_missing_fields(template, collected)
        pending += [name for name in invalid if name not in pending]
        if len(pending) == 1 and message.strip():
            extracted[pending[0]] = message.strip()

    return extracted
