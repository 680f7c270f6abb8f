"""Shared fixtures."""

import itertools

import pytest

from sheetplan.engine.models import CalculationStep, DataModel, Field, Table, ValidationRule


@pytest.fixture
def id_factory():
    """Deterministic ids: step-1, step-2, ..."""
    counter = itertools.count(1)
    return lambda prefix="step": f"{prefix}-{next(counter)}"


@pytest.fixture
def orders_model():
    return DataModel(
        tables=[
            Table(
                name="Orders",
                fields=[
                    Field(name="Quantity"),
                    Field(name="UnitPrice"),
                    Field(name="Amount", formula="=Quantity*UnitPrice"),
                ],
            )
        ],
        execution_order=["Orders"],
        calculation_chain=[
            CalculationStep(
                sheet="Orders",
                field="Amount",
                formula="=Quantity*UnitPrice",
                dependencies=["Orders!Quantity", "Orders!UnitPrice"],
            )
        ],
    )


@pytest.fixture
def sales_model():
    """Products master + Sales transactions with a lookup and a chained formula."""
    return DataModel(
        tables=[
            Table(
                name="Products",
                role="master",
                fields=[Field(name="SKU"), Field(name="Price")],
            ),
            Table(
                name="Sales",
                depends_on=["Products"],
                fields=[
                    Field(name="SKU"),
                    Field(name="Qty"),
                    Field(name="UnitPrice", formula="=XLOOKUP([@SKU],Products[SKU],Products[Price])"),
                    Field(name="Total", formula="=Qty*UnitPrice"),
                    Field(
                        name="Channel",
                        validation=ValidationRule(type="list", values=["Online", "Store"]),
                    ),
                ],
            ),
        ],
        execution_order=["Products", "Sales"],
        calculation_chain=[
            CalculationStep(
                sheet="Sales",
                field="UnitPrice",
                formula="=XLOOKUP([@SKU],Products[SKU],Products[Price])",
                dependencies=["Sales!SKU", "Products!SKU", "Products!Price"],
            ),
            CalculationStep(
                sheet="Sales",
                field="Total",
                formula="=Qty*UnitPrice",
                dependencies=["Sales!Qty", "Sales!UnitPrice"],
            ),
        ],
    )
