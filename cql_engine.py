#!/usr/bin/env python3
"""Binding to an external CQL evaluation engine.

The engine itself lives on a FHIR server that implements the Library/$evaluate
operation. This module assembles what the server needs (the ELM library and
its includes, the value-set cache and the parameters), ships one patient at a
time to it and reshapes the answer into per-patient results.
"""

import logging
import os
from abc import ABC, abstractmethod
from collections import namedtuple
from datetime import date, datetime

from dateutil.parser import isoparse

from fhir_utils import (
    create_bundle,
    create_library,
    create_session,
    create_value_set,
    evaluate_library,
    from_parameters,
    library_id,
    put_resource,
    to_parameter,
    to_parameters,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080/fhir"
DEFAULT_TIMEOUT = 60

# OperationOutcome issue severity -> message severity
ISSUE_SEVERITIES = {
    "fatal": "Error",
    "error": "Error",
    "warning": "Warning",
    "information": "Message",
}

class CqlEngineError(Exception):
    """Base class for errors raised while assembling or running a library."""

class LibraryError(CqlEngineError):
    """Raised for malformed ELM or include wiring that cannot be resolved."""

class TerminologyError(CqlEngineError):
    """Raised for a malformed value-set cache."""

LibraryReference = namedtuple("LibraryReference", ["name", "version", "url"])

FHIR_HELPERS = LibraryReference("FHIRHelpers", "4.0.1", "http://hl7.org/fhir/Library/FHIRHelpers")

# Merged into every processor's dependencies unless the caller overrides a name.
DEFAULT_HELPER_LIBRARIES = {"FHIRHelpers": FHIR_HELPERS}

def library_identifier(elm_json):
    """Return (name, version) from the identifier of an ELM JSON library."""
    try:
        identifier = elm_json["library"]["identifier"]
        return identifier["id"], identifier.get("version")
    except (KeyError, TypeError) as e:
        raise LibraryError("ELM JSON has no library identifier") from e

def library_name(library):
    """Return the name a library is included by, for ELM JSON or a LibraryReference."""
    if isinstance(library, LibraryReference):
        return library.name
    name, _ = library_identifier(library)
    return name

class Repository:
    """Named registry of ELM libraries and engine-resident library references."""

    def __init__(self, libraries=None):
        self.libraries = {}
        for library in (libraries or {}).values():
            self.libraries[library_name(library)] = library
        self._resolved = {}
        self._resolving = set()

    def resolve(self, name, version=None):
        if name not in self.libraries:
            raise LibraryError(f"Library {name} is not available in the repository")
        entry = self.libraries[name]
        if isinstance(entry, LibraryReference):
            found_version = entry.version
        else:
            _, found_version = library_identifier(entry)
        if version and found_version and version != found_version:
            raise LibraryError(f"Library {name} version {version} requested, {found_version} available")
        if isinstance(entry, LibraryReference):
            return entry

        if name not in self._resolved:
            if name in self._resolving:
                raise LibraryError(f"Circular include of library {name}")
            self._resolving.add(name)
            try:
                self._resolved[name] = Library(entry, self)
            finally:
                self._resolving.discard(name)
        return self._resolved[name]

class Library:
    """An ELM library bound to the libraries it includes."""

    def __init__(self, elm_json, repository=None):
        self.elm = elm_json
        self.name, self.version = library_identifier(elm_json)
        body = elm_json["library"]
        statements = [statement for statement in body.get("statements", {}).get("def", []) if "name" in statement]
        self.expressions = [statement["name"] for statement in statements]
        self.list_expressions = {
            statement["name"]
            for statement in statements
            if (statement.get("resultTypeSpecifier") or {}).get("type") == "ListTypeSpecifier"
        }
        self.includes = {}
        for include in body.get("includes", {}).get("def", []):
            if repository is None:
                raise LibraryError(f"Library {self.name} includes {include.get('path')} but no repository was given")
            local_identifier = include.get("localIdentifier", include.get("path"))
            self.includes[local_identifier] = repository.resolve(include.get("path"), include.get("version"))

    def has_expression(self, name):
        return name in self.expressions

    def is_list_expression(self, name):
        return name in self.list_expressions

    def dependencies(self):
        """Return every ELM library this one includes, directly or transitively."""
        found = {}
        pending = list(self.includes.values())
        while pending:
            library = pending.pop()
            if isinstance(library, LibraryReference) or library.name in found:
                continue
            found[library.name] = library
            pending.extend(library.includes.values())
        return list(found.values())

    def __repr__(self):
        return f"Library({self.name!r}, version={self.version!r})"

ValueSet = namedtuple("ValueSet", ["oid", "version", "codes"])

def value_set_url(oid):
    if "://" in oid or oid.startswith("urn:"):
        return oid
    return f"urn:oid:{oid}"

class CodeService:
    """Value-set lookups over a {oid: {version: [codes]}} cache."""

    def __init__(self, value_set_cache=None):
        self.value_sets = {}
        if value_set_cache is None:
            return
        if not isinstance(value_set_cache, dict):
            raise TerminologyError("Value-set cache must be a mapping of oid to versions")
        for oid, versions in value_set_cache.items():
            if not isinstance(versions, dict):
                raise TerminologyError(f"Value set {oid} must map versions to code lists")
            for version, codes in versions.items():
                if not isinstance(codes, list):
                    raise TerminologyError(f"Value set {oid} version {version} must list its codes")
                self.value_sets.setdefault(oid, {})[version] = ValueSet(oid, version, codes)

    def find_value_set_versions(self, oid):
        return list(self.value_sets.get(oid, {}).values())

    def find_value_set(self, oid, version=None):
        if version is not None:
            return self.value_sets.get(oid, {}).get(version)
        versions = self.find_value_set_versions(oid)
        if not versions:
            return None
        return max(versions, key=lambda value_set: value_set.version or "")

    def value_set_resources(self):
        return [
            create_value_set(value_set_url(value_set.oid), value_set.version, value_set.codes)
            for versions in self.value_sets.values()
            for value_set in versions.values()
        ]

def parse_datetime(value):
    """Parse an ISO 8601 execution date-time; date and datetime values pass through."""
    if isinstance(value, (date, datetime)):
        return value
    return isoparse(value)

class Results:
    def __init__(self):
        self.patient_results = {}

    def record_patient_results(self, patient_id, results):
        self.patient_results[patient_id] = results

class Executor(ABC):
    """Runs a bound library against every patient in a patient source."""

    def __init__(self, library, code_service, parameters=None, message_listener=None):
        self.library = library
        self.code_service = code_service
        self.parameters = parameters
        self.message_listener = message_listener

    def execute(self, patient_source, execution_datetime=None):
        return self._run(None, patient_source, execution_datetime)

    def execute_expression(self, expression, patient_source, execution_datetime=None):
        if not self.library.has_expression(expression):
            raise LibraryError(f"Library {self.library.name} does not define expression {expression}")
        return self._run([expression], patient_source, execution_datetime)

    def _run(self, expressions, patient_source, execution_datetime):
        # Leaves the cursor past the last patient; callers rewind it.
        results = Results()
        patient = patient_source.current_patient()
        while patient is not None:
            patient_results = self.evaluate_patient(patient, expressions, execution_datetime)
            results.record_patient_results(patient.id, patient_results)
            patient = patient_source.next_patient()
        return results

    def emit(self, source, code, severity, message):
        if self.message_listener is not None:
            self.message_listener.on_message(source, code, severity, message)
        else:
            logger.info("%s [%s] %s", severity, code, message)

    @abstractmethod
    def evaluate_patient(self, patient, expressions, execution_datetime):
        """Evaluate the named expressions (all of them if None) for one patient."""
        pass

class EvaluationEngine(ABC):
    """Factory for the pieces a processor is assembled from."""

    def repository(self, libraries):
        return Repository(libraries)

    def library(self, elm_json, repository):
        return Library(elm_json, repository)

    def code_service(self, value_set_cache):
        return CodeService(value_set_cache)

    def parse_datetime(self, value):
        return parse_datetime(value)

    @abstractmethod
    def executor(self, library, code_service, parameters=None, message_listener=None):
        pass

class RemoteExecutor(Executor):
    """Executor that evaluates through the Library/$evaluate operation of a FHIR server."""

    def __init__(self, library, code_service, parameters=None, message_listener=None,
                 base_url=DEFAULT_BASE_URL, session=None, timeout=DEFAULT_TIMEOUT):
        super().__init__(library, code_service, parameters, message_listener)
        self.base_url = base_url.rstrip("/")
        self.session = session or create_session()
        self.timeout = timeout
        self.published = False

    def publish(self):
        """Upload the library and its ELM includes to the server, once."""
        if self.published:
            return
        for library in self.library.dependencies() + [self.library]:
            resource = create_library(
                library.name,
                library.version,
                library.elm,
                f"{self.base_url}/Library/{library.name}"
            )
            put_resource(self.session, self.base_url, "Library", resource, timeout=self.timeout)
            logger.info("Published library %s version %s", library.name, library.version)
        self.published = True

    def build_parameters(self, patient, expressions, execution_datetime):
        parameters = [to_parameter("subject", f"Patient/{patient.id}")]
        for expression in expressions or []:
            parameters.append(to_parameter("expression", expression))
        if self.parameters:
            parameters.append(to_parameter("parameters", to_parameters(self.parameters)))
        parameters.append(to_parameter("useServerData", False))
        data = create_bundle(patient.resources + self.code_service.value_set_resources())
        parameters.append(to_parameter("data", data))
        if execution_datetime is not None:
            parameters.append(to_parameter("executionDateTime", execution_datetime))
        return {"resourceType": "Parameters", "parameter": parameters}

    def evaluate_patient(self, patient, expressions, execution_datetime):
        self.publish()
        body = self.build_parameters(patient, expressions, execution_datetime)
        response = evaluate_library(
            self.session,
            self.base_url,
            library_id(self.library.name, self.library.version),
            body,
            timeout=self.timeout
        )
        results = from_parameters(response)
        errors = results.pop("evaluation error", None)
        if errors is not None:
            self.report_errors(errors)
        return self.shape_lists(results, expressions or self.library.expressions)

    def shape_lists(self, results, expressions):
        """Restore list results, which arrive as zero or more repeated parameters."""
        for name in expressions:
            if not self.library.is_list_expression(name):
                continue
            if name not in results:
                results[name] = []
            elif results[name] is not None and not isinstance(results[name], list):
                results[name] = [results[name]]
        return results

    def report_errors(self, errors):
        if not isinstance(errors, list):
            errors = [errors]
        for error in errors:
            if isinstance(error, dict) and error.get("resourceType") == "OperationOutcome":
                for issue in error.get("issue", []):
                    severity = ISSUE_SEVERITIES.get(issue.get("severity"), "Error")
                    self.emit(issue, issue.get("code"), severity, issue.get("diagnostics", ""))
            else:
                self.emit(error, "exception", "Error", str(error))

class RemoteEngine(EvaluationEngine):
    def __init__(self, base_url=DEFAULT_BASE_URL, timeout=DEFAULT_TIMEOUT, session=None):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session

    @classmethod
    def from_env(cls):
        return cls(
            base_url=os.environ.get("CQL_ENGINE_BASE_URL", DEFAULT_BASE_URL),
            timeout=float(os.environ.get("CQL_ENGINE_TIMEOUT", DEFAULT_TIMEOUT))
        )

    def executor(self, library, code_service, parameters=None, message_listener=None):
        return RemoteExecutor(
            library,
            code_service,
            parameters,
            message_listener,
            base_url=self.base_url,
            session=self.session,
            timeout=self.timeout
        )
