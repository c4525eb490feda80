from fastapi import APIRouter, HTTPException

from sophia_api.schemas.calculator import CalculatorErrorBody, CalculatorInfo, CalculatorRequest, CalculatorResponse
from sophia_api.services.calculator_service import UNKNOWN_CALCULATOR, execute_calculator, list_calculators

router = APIRouter()


@router.get("/calculators", response_model=list[CalculatorInfo])
def get_calculators():
    return [
        CalculatorInfo(
            name=calc.name,
            description=calc.description,
            parameters=calc.input_model.model_json_schema(),
            fallback_url=calc.fallback_url,
        )
        for calc in list_calculators()
    ]


@router.post("/calculators/{name}", response_model=CalculatorResponse)
def run_calculator(name: str, request: CalculatorRequest):
    """Run a calculator directly. Input and calculation errors come back in the body, not as HTTP errors."""
    result = execute_calculator(name, request.inputs)
    if result.error_code == UNKNOWN_CALCULATOR:
        raise HTTPException(status_code=404, detail=result.error_message)

    error = None
    if not result.success:
        error = CalculatorErrorBody(
            code=result.error_code,
            message=result.error_message,
            fallback_url=result.fallback_url,
        )
    return CalculatorResponse(
        success=result.success,
        calculator_name=result.calculator_name,
        inputs=result.inputs,
        summary=result.summary,
        details=result.details or {},
        formatted_output=result.formatted_output,
        error=error,
        execution_time_ms=result.execution_time_ms,
    )
