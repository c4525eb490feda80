"""Real-estate calculators (Cyprus transfer fees, capital gains tax, VAT).

Each calculator is a pure function of its validated arguments. Dispatch is a
lookup in ``CALCULATORS``; ``execute_calculator`` never raises and always
returns a ``CalculatorResult`` carrying a fallback link for the failure case.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Literal, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from sophia_api.logging_config import get_logger

logger = get_logger("calculator_service")

INVALID_INPUT = "INVALID_INPUT"
CALCULATION_ERROR = "CALCULATION_ERROR"
UNKNOWN_CALCULATOR = "UNKNOWN_CALCULATOR"

CALCULATORS_HELP_URL = "https://www.zyprus.com/help"


def format_eur(value: float) -> str:
    return f"€{value:,.2f}"


@dataclass(frozen=True)
class CalculationOutput:
    summary: str
    details: dict[str, Any]
    formatted_output: str


@dataclass(frozen=True)
class CalculatorResult:
    success: bool
    calculator_name: str
    inputs: dict[str, Any]
    execution_time_ms: float
    summary: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    formatted_output: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    fallback_url: Optional[str] = None

    def to_reply_text(self) -> str:
        """Text appended to a chat reply."""
        if self.success:
            return self.formatted_output or self.summary or ""
        text = f"⚠️ {self.error_message or 'The calculation could not be completed.'}"
        if self.fallback_url:
            text += f"\nYou can also use the online calculator: {self.fallback_url}"
        return text


# --- argument schemas ---------------------------------------------------


class TransferFeesInput(BaseModel):
    property_value: float = Field(gt=0, description="Purchase price of the property in EUR")
    joint_names: bool = Field(default=False, description="Whether the property is bought in two names")


class CapitalGainsInput(BaseModel):
    sale_price: float = Field(gt=0, description="Sale price in EUR")
    purchase_price: float = Field(gt=0, description="Original purchase price in EUR")
    purchase_year: Optional[int] = Field(default=None, ge=1900, le=2100, description="Year of purchase")
    sale_year: Optional[int] = Field(default=None, ge=1900, le=2100, description="Year of sale")
    cost_of_improvements: float = Field(default=0, ge=0)
    transfer_fees: float = Field(default=0, ge=0)
    interest_on_loan: float = Field(default=0, ge=0)
    legal_fees: float = Field(default=0, ge=0)
    estate_agent_fees: float = Field(default=0, ge=0)
    other_expenses: float = Field(default=0, ge=0)
    allowance_type: Literal["main_residence", "farm_land", "any_other_sale", "none"] = Field(
        default="any_other_sale",
        description="Lifetime allowance claimed on the sale",
    )


class VatInput(BaseModel):
    buildable_area: float = Field(gt=0, description="Buildable area in square metres")
    price: float = Field(gt=0, description="Price of the new property in EUR")
    planning_application_date: str = Field(description="Planning application date as DD/MM/YYYY")

    @field_validator("planning_application_date")
    @classmethod
    def _check_date(cls, value: str) -> str:
        try:
            datetime.strptime(value.strip(), "%d/%m/%Y")
        except ValueError:
            raise ValueError("must be a date in DD/MM/YYYY format")
        return value.strip()

    @property
    def application_date(self) -> date:
        return datetime.strptime(self.planning_application_date, "%d/%m/%Y").date()


# --- calculators --------------------------------------------------------

TRANSFER_FEE_BANDS = ((85_000, 0.03), (170_000, 0.05), (None, 0.08))
TRANSFER_FEE_EXEMPTION = 0.5


def _banded_transfer_fee(value: float) -> float:
    fee = 0.0
    lower = 0.0
    for upper, rate in TRANSFER_FEE_BANDS:
        if upper is None or value <= upper:
            fee += (value - lower) * rate
            break
        fee += (upper - lower) * rate
        lower = upper
    return fee


def calculate_transfer_fees(args: TransferFeesInput) -> CalculationOutput:
    persons = 2 if args.joint_names else 1
    value_per_person = args.property_value / persons
    base_fees = _banded_transfer_fee(value_per_person) * persons
    exemption = base_fees * TRANSFER_FEE_EXEMPTION
    total = base_fees - exemption

    lines = [
        "💰 Transfer Fees Calculation",
        "",
        f"Property Value: {format_eur(args.property_value)}",
        f"Buying in Joint Names: {'Yes' if args.joint_names else 'No'}",
        "",
        "Calculation Breakdown:",
    ]
    if args.joint_names:
        lines.append(f"- Value per person: {format_eur(value_per_person)}")
    lines += [
        f"- Base transfer fees: {format_eur(base_fees)}",
        f"- 50% Exemption (resale): -{format_eur(exemption)}",
        "",
        f"📊 Total Transfer Fees: {format_eur(total)}",
        "",
        "Note: assumes a resale property (50% exemption applied). New builds subject to VAT pay no transfer fees.",
    ]
    return CalculationOutput(
        summary=f"Transfer fees: {format_eur(total)}",
        details={
            "property_value": args.property_value,
            "joint_names": args.joint_names,
            "value_per_person": round(value_per_person, 2),
            "base_fees": round(base_fees, 2),
            "exemption_applied": round(exemption, 2),
            "total_fees": round(total, 2),
        },
        formatted_output="\n".join(lines),
    )


CGT_RATE = 0.20
CGT_INFLATION_RATE = 0.02
CGT_ALLOWANCES = {
    "main_residence": 85_430,
    "farm_land": 25_629,
    "any_other_sale": 17_086,
    "none": 0,
}


def calculate_capital_gains_tax(args: CapitalGainsInput) -> CalculationOutput:
    years_held = 0
    if args.purchase_year is not None and args.sale_year is not None:
        if args.sale_year < args.purchase_year:
            raise ValueError("sale_year cannot be earlier than purchase_year")
        years_held = args.sale_year - args.purchase_year

    adjusted_purchase = args.purchase_price * (1 + CGT_INFLATION_RATE) ** years_held
    expenses = (
        args.cost_of_improvements
        + args.transfer_fees
        + args.interest_on_loan
        + args.legal_fees
        + args.estate_agent_fees
        + args.other_expenses
    )
    cost_basis = adjusted_purchase + expenses
    capital_gain = args.sale_price - cost_basis
    allowance = CGT_ALLOWANCES[args.allowance_type]
    taxable_gain = max(0.0, capital_gain - allowance)
    tax = taxable_gain * CGT_RATE

    lines = [
        "📈 Capital Gains Tax Calculation",
        "",
        f"- Sale Price: {format_eur(args.sale_price)}",
        f"- Purchase Price: {format_eur(args.purchase_price)}",
        f"- Inflation-Adjusted Purchase Price ({years_held} years): {format_eur(adjusted_purchase)}",
        f"- Deductible Expenses: {format_eur(expenses)}",
        f"- Total Cost Basis: {format_eur(cost_basis)}",
        f"- Capital Gain: {format_eur(capital_gain)}",
        f"- Allowance ({args.allowance_type.replace('_', ' ')}): {format_eur(allowance)}",
        f"- Taxable Gain: {format_eur(taxable_gain)}",
        "",
        f"📊 Capital Gains Tax (20%): {format_eur(tax)}",
        "",
        "Note: this is an estimate. Consult a tax professional for an accurate assessment.",
    ]
    return CalculationOutput(
        summary=f"Capital gains tax: {format_eur(tax)}",
        details={
            "years_held": years_held,
            "adjusted_purchase_price": round(adjusted_purchase, 2),
            "deductible_expenses": round(expenses, 2),
            "total_cost_basis": round(cost_basis, 2),
            "capital_gain": round(capital_gain, 2),
            "allowance": allowance,
            "taxable_gain": round(taxable_gain, 2),
            "capital_gains_tax": round(tax, 2),
        },
        formatted_output="\n".join(lines),
    )


VAT_POLICY_CUTOFF = date(2023, 11, 1)
VAT_REDUCED_RATE = 0.05
VAT_STANDARD_RATE = 0.19
VAT_NEW_POLICY_PRICE_LIMIT = 350_000
VAT_OLD_POLICY_AREA_LIMIT = 200


def calculate_vat(args: VatInput) -> CalculationOutput:
    new_policy = args.application_date >= VAT_POLICY_CUTOFF
    breakdown: list[str] = []

    if new_policy:
        rate = VAT_REDUCED_RATE if args.price <= VAT_NEW_POLICY_PRICE_LIMIT else VAT_STANDARD_RATE
        total_vat = args.price * rate
        limit_word = "within" if rate == VAT_REDUCED_RATE else "above"
        breakdown.append(f"Price is {limit_word} the €350,000 limit")
        breakdown.append(f"VAT Rate: {int(rate * 100)}%")
    elif args.buildable_area <= VAT_OLD_POLICY_AREA_LIMIT:
        total_vat = args.price * VAT_REDUCED_RATE
        breakdown.append(f"Buildable area ({args.buildable_area:g}m²) is within the 200m² limit")
        breakdown.append("VAT Rate: 5%")
    else:
        price_per_sqm = args.price / args.buildable_area
        reduced_area = VAT_OLD_POLICY_AREA_LIMIT
        standard_area = args.buildable_area - VAT_OLD_POLICY_AREA_LIMIT
        reduced_vat = reduced_area * price_per_sqm * VAT_REDUCED_RATE
        standard_vat = standard_area * price_per_sqm * VAT_STANDARD_RATE
        total_vat = reduced_vat + standard_vat
        breakdown.append(f"First 200m² at 5%: {format_eur(reduced_vat)}")
        breakdown.append(f"Remaining {standard_area:g}m² at 19%: {format_eur(standard_vat)}")

    policy = "New policy (from 1 Nov 2023)" if new_policy else "Old policy (before 1 Nov 2023)"
    lines = [
        "💵 VAT Calculation",
        "",
        f"- Buildable Area: {args.buildable_area:g}m²",
        f"- Price: {format_eur(args.price)}",
        f"- Planning Application Date: {args.planning_application_date}",
        f"- Applied Policy: {policy}",
        "",
        *[f"• {line}" for line in breakdown],
        "",
        f"📊 Total VAT: {format_eur(total_vat)}",
    ]
    return CalculationOutput(
        summary=f"VAT: {format_eur(total_vat)}",
        details={
            "policy": "new" if new_policy else "old",
            "total_vat": round(total_vat, 2),
            "breakdown": breakdown,
        },
        formatted_output="\n".join(lines),
    )


# --- registry -----------------------------------------------------------


@dataclass(frozen=True)
class CalculatorDefinition:
    name: str
    description: str
    input_model: Type[BaseModel]
    func: Callable[[Any], CalculationOutput]
    fallback_url: str

    def tool_definition(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


CALCULATORS: dict[str, CalculatorDefinition] = {
    calc.name: calc
    for calc in (
        CalculatorDefinition(
            name="transfer_fees",
            description="Calculate Cyprus property transfer fees for a resale purchase.",
            input_model=TransferFeesInput,
            func=calculate_transfer_fees,
            fallback_url="https://www.zyprus.com/help/1260/property-transfer-fees-calculator",
        ),
        CalculatorDefinition(
            name="capital_gains_tax",
            description="Estimate Cyprus capital gains tax on the sale of a property.",
            input_model=CapitalGainsInput,
            func=calculate_capital_gains_tax,
            fallback_url="https://www.zyprus.com/capital-gains-calculator",
        ),
        CalculatorDefinition(
            name="vat_calculator",
            description="Calculate VAT on a new-build property from its area, price and planning application date.",
            input_model=VatInput,
            func=calculate_vat,
            fallback_url="https://www.mof.gov.cy/mof/vat/vat.nsf/vatcalculator_en/vatcalculator_en",
        ),
    )
}


def get_calculator(name: str) -> Optional[CalculatorDefinition]:
    return CALCULATORS.get(name)


def list_calculators() -> list[CalculatorDefinition]:
    return list(CALCULATORS.values())


def tool_definitions() -> list[dict]:
    return [calc.tool_definition() for calc in CALCULATORS.values()]


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "input"
        parts.append(f"{location}: {error.get('msg')}")
    return "Invalid input - " + "; ".join(parts)


def validate_calculator_inputs(name: str, inputs: dict[str, Any]) -> dict[str, str]:
    """Return field -> message for every invalid input without running the calculator."""
    calc = get_calculator(name)
    if calc is None:
        return {"calculator": f"Unknown calculator: {name}"}
    try:
        calc.input_model.model_validate(inputs or {})
    except ValidationError as exc:
        return {
            ".".join(str(item) for item in error.get("loc", ())) or "input": error.get("msg", "invalid")
            for error in exc.errors()
        }
    return {}


def execute_calculator(name: str, inputs: Optional[dict[str, Any]]) -> CalculatorResult:
    started = time.perf_counter()
    inputs = dict(inputs or {})

    def elapsed_ms() -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    calc = get_calculator(name)
    if calc is None:
        return CalculatorResult(
            success=False,
            calculator_name=name,
            inputs=inputs,
            execution_time_ms=elapsed_ms(),
            error_code=UNKNOWN_CALCULATOR,
            error_message=f"Unknown calculator: {name}",
            fallback_url=CALCULATORS_HELP_URL,
        )

    try:
        args = calc.input_model.model_validate(inputs)
    except ValidationError as exc:
        return CalculatorResult(
            success=False,
            calculator_name=name,
            inputs=inputs,
            execution_time_ms=elapsed_ms(),
            error_code=INVALID_INPUT,
            error_message=_describe_validation_error(exc),
            fallback_url=calc.fallback_url,
        )

    try:
        output = calc.func(args)
    except Exception as exc:
        logger.warning(
            "Calculator failed",
            extra={"context": {"calculator": name, "error": str(exc)}},
        )
        return CalculatorResult(
            success=False,
            calculator_name=name,
            inputs=inputs,
            execution_time_ms=elapsed_ms(),
            error_code=CALCULATION_ERROR,
            error_message=f"Calculation failed: {exc}",
            fallback_url=calc.fallback_url,
        )

    result = CalculatorResult(
        success=True,
        calculator_name=name,
        inputs=inputs,
        execution_time_ms=elapsed_ms(),
        summary=output.summary,
        details=output.details,
        formatted_output=output.formatted_output,
    )
    logger.info(
        "Calculator executed",
        extra={"context": {"calculator": name, "execution_time_ms": result.execution_time_ms}},
    )
    return result


def execute_tool_call(name: str, raw_arguments: Any) -> CalculatorResult:
    """Run a calculator from an AI tool call whose arguments arrive as JSON text."""
    if isinstance(raw_arguments, dict):
        arguments = raw_arguments
    else:
        try:
            arguments = json.loads(raw_arguments or "{}")
        except (TypeError, ValueError):
            logger.warning("Malformed tool call arguments", extra={"context": {"calculator": name}})
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
    return execute_calculator(name, arguments)
