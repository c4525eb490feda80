import pytest

from sophia_api.services.calculator_service import (
    CALCULATION_ERROR,
    CALCULATORS,
    CALCULATORS_HELP_URL,
    INVALID_INPUT,
    UNKNOWN_CALCULATOR,
    execute_calculator,
    execute_tool_call,
    format_eur,
    tool_definitions,
    validate_calculator_inputs,
)


class TestTransferFees:
    def test_single_buyer(self):
        result = execute_calculator("transfer_fees", {"property_value": 300000})

        assert result.success
        assert result.details["base_fees"] == 17200
        assert result.details["exemption_applied"] == 8600
        assert result.details["total_fees"] == 8600
        assert "€8,600.00" in result.formatted_output

    def test_joint_names_split_value(self):
        result = execute_calculator("transfer_fees", {"property_value": 300000, "joint_names": True})

        assert result.details["value_per_person"] == 150000
        assert result.details["base_fees"] == 11600
        assert result.details["total_fees"] == 5800

    def test_first_band_only(self):
        result = execute_calculator("transfer_fees", {"property_value": 80000})
        assert result.details["total_fees"] == pytest.approx(1200)


class TestCapitalGainsTax:
    def test_main_residence_allowance(self):
        result = execute_calculator(
            "capital_gains_tax",
            {"sale_price": 300000, "purchase_price": 200000, "allowance_type": "main_residence"},
        )

        assert result.success
        assert result.details["years_held"] == 0
        assert result.details["capital_gain"] == 100000
        assert result.details["taxable_gain"] == 14570
        assert result.details["capital_gains_tax"] == pytest.approx(2914)

    def test_inflation_adjustment(self):
        result = execute_calculator(
            "capital_gains_tax",
            {
                "sale_price": 300000,
                "purchase_price": 200000,
                "purchase_year": 2020,
                "sale_year": 2022,
                "allowance_type": "none",
            },
        )
        assert result.details["years_held"] == 2
        assert result.details["adjusted_purchase_price"] == pytest.approx(208080)

    def test_loss_is_not_taxed(self):
        result = execute_calculator("capital_gains_tax", {"sale_price": 100000, "purchase_price": 150000})
        assert result.details["capital_gains_tax"] == 0

    def test_sale_before_purchase_is_calculation_error(self):
        result = execute_calculator(
            "capital_gains_tax",
            {"sale_price": 1, "purchase_price": 1, "purchase_year": 2020, "sale_year": 2019},
        )

        assert not result.success
        assert result.error_code == CALCULATION_ERROR
        assert result.fallback_url == CALCULATORS["capital_gains_tax"].fallback_url


class TestVat:
    def test_new_policy_reduced_rate(self):
        result = execute_calculator(
            "vat_calculator",
            {"buildable_area": 150, "price": 300000, "planning_application_date": "15/12/2023"},
        )
        assert result.details["policy"] == "new"
        assert result.details["total_vat"] == 15000

    def test_new_policy_above_price_limit(self):
        result = execute_calculator(
            "vat_calculator",
            {"buildable_area": 150, "price": 400000, "planning_application_date": "01/11/2023"},
        )
        assert result.details["total_vat"] == pytest.approx(76000)

    def test_old_policy_split_area(self):
        result = execute_calculator(
            "vat_calculator",
            {"buildable_area": 250, "price": 500000, "planning_application_date": "01/06/2023"},
        )
        assert result.details["policy"] == "old"
        assert result.details["total_vat"] == pytest.approx(39000)

    def test_bad_date_is_invalid_input(self):
        result = execute_calculator(
            "vat_calculator",
            {"buildable_area": 100, "price": 200000, "planning_application_date": "2023-12-15"},
        )
        assert not result.success
        assert result.error_code == INVALID_INPUT
        assert "planning_application_date" in result.error_message


class TestDispatch:
    def test_unknown_calculator(self):
        result = execute_calculator("mortgage", {})

        assert not result.success
        assert result.error_code == UNKNOWN_CALCULATOR
        assert result.fallback_url == CALCULATORS_HELP_URL

    def test_missing_required_input(self):
        result = execute_calculator("transfer_fees", {})

        assert result.error_code == INVALID_INPUT
        assert "property_value" in result.error_message
        assert "online calculator" in result.to_reply_text()

    def test_negative_value_rejected(self):
        errors = validate_calculator_inputs("transfer_fees", {"property_value": -5})
        assert "property_value" in errors

    def test_validate_ok(self):
        assert validate_calculator_inputs("transfer_fees", {"property_value": 100000}) == {}

    def test_execution_time_recorded(self):
        result = execute_calculator("transfer_fees", {"property_value": 100000})
        assert result.execution_time_ms >= 0

    def test_tool_call_with_json_arguments(self):
        result = execute_tool_call("transfer_fees", '{"property_value": 300000}')
        assert result.details["total_fees"] == 8600

    def test_tool_call_with_malformed_arguments(self):
        result = execute_tool_call("transfer_fees", "{not json")
        assert result.error_code == INVALID_INPUT

    def test_tool_definitions(self):
        names = [tool["function"]["name"] for tool in tool_definitions()]
        assert names == ["transfer_fees", "capital_gains_tax", "vat_calculator"]
        params = tool_definitions()[0]["function"]["parameters"]
        assert "property_value" in params["properties"]

    def test_format_eur(self):
        assert format_eur(8600) == "€8,600.00"
