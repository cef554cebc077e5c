"""Pytest configuration for cql-processor tests."""

import pytest
from dateutil.parser import isoparse

from cql_engine import EvaluationEngine, Executor

BASE_URL = "http://cql.example.com/fhir"


def make_elm(name, version="1.0.0", expressions=(), includes=()):
    """Build a minimal ELM JSON library."""
    library = {
        "identifier": {"id": name, "version": version},
        "statements": {"def": [{"name": expression, "context": "Patient"} for expression in expressions]},
    }
    if includes:
        library["includes"] = {
            "def": [
                {"localIdentifier": path, "path": path, "version": include_version}
                for path, include_version in includes
            ]
        }
    return {"library": library}


def make_bundle(patient_id, birth_date="2003-06-15", extra=()):
    entries = [{"resource": {"resourceType": "Patient", "id": patient_id, "birthDate": birth_date}}]
    entries.extend({"resource": resource} for resource in extra)
    return {"resourceType": "Bundle", "type": "collection", "entry": entries}


def age_in_years(birth_date, now):
    born = isoparse(birth_date).date()
    today = now.date() if hasattr(now, "date") else now
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


DEFINITIONS = {
    "Patient": lambda patient, now: patient.patient,
    "Is18OrOlder": lambda patient, now: age_in_years(patient.patient["birthDate"], now) >= 18,
    "ConditionCount": lambda patient, now: len(patient.find("Condition")),
}


class FakeExecutor(Executor):
    """Evaluates expressions with Python callables instead of a CQL engine."""

    def __init__(self, library, code_service, parameters=None, message_listener=None, now=None):
        super().__init__(library, code_service, parameters, message_listener)
        self.now = now or isoparse("2024-06-01T00:00:00")
        self.calls = []

    def evaluate_patient(self, patient, expressions, execution_datetime):
        self.calls.append((patient.id, expressions, execution_datetime))
        now = execution_datetime or self.now
        names = expressions or self.library.expressions
        return {name: DEFINITIONS[name](patient, now) for name in names}


class FailingExecutor(FakeExecutor):
    def evaluate_patient(self, patient, expressions, execution_datetime):
        raise RuntimeError("evaluation failed")


class FakeEngine(EvaluationEngine):
    def __init__(self, executor_class=FakeExecutor):
        self.executor_class = executor_class
        self.executors = []

    def executor(self, library, code_service, parameters=None, message_listener=None):
        executor = self.executor_class(library, code_service, parameters, message_listener)
        self.executors.append(executor)
        return executor


@pytest.fixture
def elm_json():
    return make_elm("AgeCheck", expressions=["Patient", "Is18OrOlder", "ConditionCount"],
                    includes=[("FHIRHelpers", "4.0.1")])


@pytest.fixture
def value_set_cache():
    return {
        "2.16.840.1.113883.3.464.1003.103.12.1001": {
            "20190315": [
                {"code": "44054006", "system": "http://snomed.info/sct"},
                {"code": "E11.9", "system": "http://hl7.org/fhir/sid/icd-10-cm"},
            ]
        }
    }


@pytest.fixture
def patient_bundle():
    return make_bundle("pt-1", birth_date="2003-06-15")


@pytest.fixture
def fake_engine():
    return FakeEngine()
