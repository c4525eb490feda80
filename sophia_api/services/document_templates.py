import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

FIELD_TYPES = ("text", "email", "phone", "url", "date", "number", "multiline", "select")


@dataclass(frozen=True)
class FieldValidation:
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    mask_phone: bool = False


@dataclass(frozen=True)
class DocumentField:
    name: str
    label: str
    type: str = "text"
    required: bool = True
    description: str = ""
    placeholder: Optional[str] = None
    options: tuple[str, ...] = ()
    validation: Optional[FieldValidation] = None
    depends_on: Optional[tuple[str, str]] = None  # (field name, value) that must be collected to show this field

    def is_visible(self, collected: dict[str, Any]) -> bool:
        if self.depends_on is None:
            return True
        other, expected = self.depends_on
        return str(collected.get(other, "")).strip().lower() == expected.lower()


@dataclass(frozen=True)
class DocumentTemplate:
    id: str
    name: str
    category: str
    description: str
    fields: tuple[DocumentField, ...]
    triggers: tuple[str, ...] = ()
    # at least one of these words must also appear for a trigger to count
    requires: tuple[str, ...] = ()

    def get_field(self, name: str) -> Optional[DocumentField]:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def visible_fields(self, collected: dict[str, Any]) -> list[DocumentField]:
        return [item for item in self.fields if item.is_visible(collected)]

    def required_fields(self, collected: Optional[dict[str, Any]] = None) -> list[DocumentField]:
        return [item for item in self.visible_fields(collected or {}) if item.required]


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def compute_missing_fields(template: DocumentTemplate, collected: dict[str, Any]) -> list[str]:
    """Required, currently visible fields without a value, in template order."""
    return [item.name for item in template.required_fields(collected) if is_empty(collected.get(item.name))]


_PHONE_MASK = FieldValidation(mask_phone=True)

BUILTIN_TEMPLATES = (
    DocumentTemplate(
        id="reg_banks_property",
        name="Bank/REMU Property Registration",
        category="registration",
        description="Register a client with a bank-owned property portfolio.",
        triggers=(
            "bank registration",
            "registration with bank",
            "register with bank",
            "remu registration",
            "register with remu",
            "bank property",
            "remu property",
        ),
        requires=("registration", "register"),
        fields=(
            DocumentField(
                name="bank_name",
                label="Bank Name",
                required=False,
                description="Bank or servicer team (filled in from the property link when possible)",
                placeholder="Remu Team",
            ),
            DocumentField(
                name="client_name",
                label="Client Name",
                description="Full name of the client",
                placeholder="Fawzi Goussous",
                validation=FieldValidation(min_length=2),
            ),
            DocumentField(
                name="client_phone",
                label="Client Phone",
                type="phone",
                description="Client's phone number",
                placeholder="+357 99 07 67 32",
                validation=_PHONE_MASK,
            ),
            DocumentField(
                name="property_link",
                label="Property Link",
                type="url",
                description="Link to the property listing",
                placeholder="https://www.remuproperties.com/Cyprus/listing-29190",
                validation=FieldValidation(pattern=r"^https?://.+"),
            ),
            DocumentField(
                name="agent_phone",
                label="Agent Phone",
                type="phone",
                description="Phone number of the agent attending the viewing",
                placeholder="+357 99 92 11 33",
                validation=_PHONE_MASK,
            ),
            DocumentField(
                name="property_description",
                label="Property Description",
                type="multiline",
                required=False,
                description="Short description of the property",
                placeholder="3-bedroom apartment in Limassol",
            ),
        ),
    ),
    DocumentTemplate(
        id="viewing_form",
        name="Viewing Form",
        category="viewing",
        description="Confirmation of a property viewing with a prospective buyer.",
        triggers=("viewing form", "viewing confirmation", "property viewing"),
        fields=(
            DocumentField(
                name="client_name",
                label="Client Name",
                description="Full name of the person viewing",
                placeholder="Maria Georgiou",
                validation=FieldValidation(min_length=2),
            ),
            DocumentField(
                name="client_id_number",
                label="ID/Passport Number",
                description="Identity card or passport number",
                placeholder="K1234567",
                validation=FieldValidation(min_length=4, max_length=20),
            ),
            DocumentField(
                name="viewing_date",
                label="Viewing Date",
                type="date",
                description="Date of the viewing",
                placeholder="21/03/2025",
            ),
            DocumentField(
                name="property_reference",
                label="Property Reference",
                description="Listing reference or address of the property",
                placeholder="LIM-4432",
            ),
        ),
    ),
    DocumentTemplate(
        id="marketing_agreement",
        name="Marketing Agreement",
        category="agreement",
        description="Agreement with a seller to market their property.",
        triggers=("marketing agreement", "marketing contract", "listing agreement"),
        fields=(
            DocumentField(
                name="seller_name",
                label="Seller Name",
                description="Full name of the property owner",
                placeholder="Andreas Christou",
            ),
            DocumentField(
                name="seller_email",
                label="Seller Email",
                type="email",
                description="Email address of the seller",
                placeholder="andreas@example.com",
            ),
            DocumentField(
                name="property_address",
                label="Property Address",
                type="multiline",
                description="Address of the property being marketed",
                placeholder="12 Makariou Ave, Limassol",
            ),
            DocumentField(
                name="fee_type",
                label="Fee Type",
                type="select",
                description="How the agency fee is charged",
                options=("percentage", "fixed"),
                placeholder="percentage",
            ),
            DocumentField(
                name="fee_percentage",
                label="Fee Percentage",
                type="number",
                description="Agency fee as a percentage of the sale price",
                placeholder="5",
                depends_on=("fee_type", "percentage"),
            ),
            DocumentField(
                name="fee_amount",
                label="Fixed Fee",
                type="number",
                description="Agency fee as a fixed amount in EUR",
                placeholder="10000",
                depends_on=("fee_type", "fixed"),
            ),
        ),
    ),
)


class TemplateCatalog:
    """Lookup of document templates by id and by request keywords."""

    def __init__(self, templates: Iterable[DocumentTemplate] = BUILTIN_TEMPLATES):
        self._templates: dict[str, DocumentTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: DocumentTemplate) -> None:
        for item in template.fields:
            if item.type not in FIELD_TYPES:
                raise ValueError(f"Unsupported field type {item.type!r} in template {template.id}")
        self._templates[template.id] = template

    def get(self, template_id: str) -> Optional[DocumentTemplate]:
        return self._templates.get(template_id)

    def list(self) -> list[DocumentTemplate]:
        return list(self._templates.values())

    def match_request(self, text: str) -> Optional[DocumentTemplate]:
        """Pick the template whose longest trigger phrase appears in the text.

        Triggers and required words match whole words only.
        """
        lowered = (text or "").lower()
        best: Optional[DocumentTemplate] = None
        best_length = 0
        for template in self._templates.values():
            if template.requires and not any(_contains_phrase(lowered, word) for word in template.requires):
                continue
            for trigger in template.triggers:
                if len(trigger) > best_length and _contains_phrase(lowered, trigger):
                    best, best_length = template, len(trigger)
        return best


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase.lower())}\b", text) is not None
