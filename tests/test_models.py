"""Test domain model helpers."""

from sheetplan.engine.models import Step, StepPhase, column_index_to_letter


def test_column_letters():
    assert column_index_to_letter(0) == "A"
    assert column_index_to_letter(25) == "Z"
    assert column_index_to_letter(26) == "AA"


def test_step_to_dict_copies_parameters():
    step = Step(
        id="s1",
        order=0,
        phase=StepPhase.SET_FORMULAS,
        description="设置公式: Orders.Amount",
        action="excel_set_formula",
        parameters={"formula": "=[@Quantity]*[@UnitPrice]", "range": {"sheet": "Orders"}},
    )

    data = step.to_dict()
    data["parameters"]["formula"] = "=0"
    data["parameters"]["range"]["sheet"] = "Other"

    assert step.parameters == {"formula": "=[@Quantity]*[@UnitPrice]", "range": {"sheet": "Orders"}}
