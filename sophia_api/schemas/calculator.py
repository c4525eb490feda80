from typing import Any, Optional

from pydantic import BaseModel


class CalculatorRequest(BaseModel):
    inputs: dict[str, Any] = {}


class CalculatorErrorBody(BaseModel):
    code: str
    message: str
    fallback_url: Optional[str] = None


class CalculatorResponse(BaseModel):
    success: bool
    calculator_name: str
    inputs: dict[str, Any]
    summary: Optional[str] = None
    details: dict[str, Any] = {}
    formatted_output: Optional[str] = None
    error: Optional[CalculatorErrorBody] = None
    execution_time_ms: float


class CalculatorInfo(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]
    fallback_url: str
