"""Tests for FHIR resource helpers."""

from datetime import date, datetime
from decimal import Decimal

import pytest
import requests
import responses

from conftest import BASE_URL
from fhir_utils import (
    create_library,
    evaluate_library,
    from_parameters,
    library_id,
    put_resource,
    to_parameter,
    to_parameters,
)


def test_library_id():
    assert library_id("AgeCheck", "1.0.0") == "AgeCheck-1.0.0"
    assert library_id("Age Check_v2") == "Age-Check-v2"
    assert len(library_id("x" * 100, "1")) == 64


def test_create_library():
    library = create_library("AgeCheck", None, {"library": {}}, "http://example.org/Library/AgeCheck")
    assert library["id"] == "AgeCheck"
    assert library["url"] == "http://example.org/Library/AgeCheck"
    assert "version" not in library
    assert library["type"]["coding"][0]["code"] == "logic-library"


@pytest.mark.parametrize("value, expected", [
    (True, {"valueBoolean": True}),
    (3, {"valueInteger": 3}),
    (Decimal("1.5"), {"valueDecimal": 1.5}),
    ("text", {"valueString": "text"}),
    (date(2024, 1, 1), {"valueDate": "2024-01-01"}),
    (datetime(2024, 1, 1, 8, 0), {"valueDateTime": "2024-01-01T08:00:00"}),
    ({"resourceType": "Patient", "id": "pt-1"}, {"resource": {"resourceType": "Patient", "id": "pt-1"}}),
    (None, {}),
])
def test_to_parameter(value, expected):
    assert to_parameter("p", value) == {"name": "p", **expected}


def test_to_parameter_unsupported():
    with pytest.raises(TypeError):
        to_parameter("p", object())


def test_to_parameters_repeats_lists_and_nests_mappings():
    parameters = to_parameters({"codes": ["a", "b"], "period": {"start": date(2024, 1, 1)}})
    assert parameters["parameter"] == [
        {"name": "codes", "valueString": "a"},
        {"name": "codes", "valueString": "b"},
        {"name": "period", "part": [{"name": "start", "valueDate": "2024-01-01"}]},
    ]


def test_from_parameters():
    resource = {
        "resourceType": "Parameters",
        "parameter": [
            {"name": "Flag", "valueBoolean": False},
            {"name": "Codes", "valueString": "a"},
            {"name": "Codes", "valueString": "b"},
            {"name": "Missing"},
            {"name": "Period", "part": [{"name": "low", "valueDate": "2024-01-01"}]},
        ],
    }
    assert from_parameters(resource) == {
        "Flag": False,
        "Codes": ["a", "b"],
        "Missing": None,
        "Period": {"low": "2024-01-01"},
    }


@responses.activate
def test_put_resource():
    responses.add(responses.PUT, f"{BASE_URL}/Library/AgeCheck", json={"id": "AgeCheck"}, status=201)
    result = put_resource(requests.Session(), BASE_URL, "Library", {"resourceType": "Library", "id": "AgeCheck"})

    assert result == {"id": "AgeCheck"}
    assert responses.calls[0].request.headers["Content-Type"] == "application/fhir+json"


@responses.activate
def test_evaluate_library_raises_for_status():
    responses.add(responses.POST, f"{BASE_URL}/Library/AgeCheck/$evaluate", status=500)
    with pytest.raises(requests.HTTPError):
        evaluate_library(requests.Session(), BASE_URL, "AgeCheck", {"resourceType": "Parameters"})
