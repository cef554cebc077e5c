#!/usr/bin/env python3

import logging

from cql_engine import DEFAULT_HELPER_LIBRARIES, RemoteEngine, library_name
from patient_source import PatientBundleError, PatientSource, patient_ids_in, rewound

logger = logging.getLogger(__name__)

EVALUATE_LIBRARY = "__evaluate_library__"

class CqlProcessor:
    """Executes a CQL library, compiled to ELM JSON, against one patient's FHIR bundle."""

    def __init__(self, elm_json, value_set_json, parameters=None, elm_json_dependencies=None,
                 message_listener=None, helper_libraries=None, engine=None, patient_source=None):
        """Assemble the library, its dependencies and the value-set cache into an executor.

        Args:
            elm_json: the CQL library formatted as ELM JSON
            value_set_json: value-set cache mapping codes to clinical concepts
            parameters: name to value parameters for the CQL library
            elm_json_dependencies: libraries referenced from within elm_json; wired by their
                library identifier, whatever key they are given under
            message_listener: receives the messages emitted during evaluation
            helper_libraries: libraries always available to elm_json, FHIRHelpers by default;
                entries in elm_json_dependencies with the same name take precedence
            engine: the EvaluationEngine to assemble with, RemoteEngine.from_env() by default
            patient_source: the patient data source, an empty FHIR 4.0.1 source by default
        """
        if helper_libraries is None:
            helper_libraries = DEFAULT_HELPER_LIBRARIES
        # Keyed by library name, the way includes resolve them
        self.dependencies = {
            library_name(library): library
            for library in [*helper_libraries.values(), *(elm_json_dependencies or {}).values()]
        }
        self.engine = engine or RemoteEngine.from_env()
        self.patient_source = patient_source or PatientSource.fhir_v401()
        self.patient_id = None
        self.parameters = parameters
        self.message_listener = message_listener

        self.repository = self.engine.repository(self.dependencies)
        self.library = self.engine.library(elm_json, self.repository)
        self.code_service = self.engine.code_service(value_set_json)
        self.executor = self.engine.executor(
            self.library,
            self.code_service,
            self.parameters,
            self.message_listener
        )
        logger.debug("Assembled library %s with dependencies %s", self.library.name, sorted(self.dependencies))

    def load_bundle(self, patient_bundle):
        """Replace the loaded patient bundle.

        The bundle must contain exactly one Patient resource; otherwise
        PatientBundleError is raised and the previous bundle stays loaded.
        """
        patient_ids = patient_ids_in(patient_bundle)
        if len(patient_ids) != 1:
            raise PatientBundleError(
                f"Patient bundle must contain exactly one Patient resource, found {len(patient_ids)}"
            )
        self.patient_source.reset()
        self.patient_source.load_bundles([patient_bundle])
        self.patient_id = self.patient_source.patient_ids()[0]
        logger.debug("Loaded bundle for patient %s", self.patient_id)

    def evaluate_expression(self, expr, execution_datetime=None):
        """Evaluate one expression, or the whole library for EVALUATE_LIBRARY.

        Returns None if no patient bundle has been loaded.
        """
        if not self.patient_source.has_bundles():
            return None
        if execution_datetime is not None:
            execution_datetime = self.engine.parse_datetime(execution_datetime)

        with rewound(self.patient_source):
            if expr == EVALUATE_LIBRARY:
                results = self.executor.execute(self.patient_source, execution_datetime)
                return results.patient_results[self.patient_id]
            results = self.executor.execute_expression(expr, self.patient_source, execution_datetime)
            return results.patient_results[self.patient_id][expr]

    def evaluate_library(self, execution_datetime=None):
        return self.evaluate_expression(EVALUATE_LIBRARY, execution_datetime)
