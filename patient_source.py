#!/usr/bin/env python3
"""In-memory FHIR patient data source.

Each loaded bundle holds the resources of one patient. Executors walk the
loaded patients with a cursor (current_patient / next_patient), so whoever
drives an evaluation is responsible for rewinding it afterwards.
"""

import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)

FHIR_VERSION = "4.0.1"

class PatientBundleError(ValueError):
    """Raised when a bundle cannot be used as a single patient's record."""

def bundle_resources(bundle):
    """Return the resources wrapped by the entries of a bundle."""
    if not isinstance(bundle, dict):
        raise PatientBundleError(f"Expected a bundle object, got {type(bundle).__name__}")
    resource_type = bundle.get("resourceType", "Bundle")
    if resource_type != "Bundle":
        raise PatientBundleError(f"Expected a Bundle resource, got {resource_type}")
    entries = bundle.get("entry", [])
    if not isinstance(entries, list):
        raise PatientBundleError("Bundle entry must be a list")
    return [entry.get("resource", {}) for entry in entries]

def patient_ids_in(bundle):
    """Return the ids of all Patient resources in a bundle, in entry order."""
    return [
        resource.get("id")
        for resource in bundle_resources(bundle)
        if resource.get("resourceType") == "Patient"
    ]

class PatientRecord:
    """The resources of a single patient."""

    def __init__(self, resources):
        self.resources = list(resources)
        self.patient = next(
            (resource for resource in self.resources if resource.get("resourceType") == "Patient"),
            None
        )
        if self.patient is None:
            raise PatientBundleError("Bundle does not contain a Patient resource")
        self.id = self.patient.get("id")

    def find(self, resource_type):
        return [resource for resource in self.resources if resource.get("resourceType") == resource_type]

    def __repr__(self):
        return f"PatientRecord(id={self.id!r}, resources={len(self.resources)})"

class PatientSource:
    def __init__(self, fhir_version=FHIR_VERSION):
        self.fhir_version = fhir_version
        self._bundles = []
        self._patients = []
        self._index = 0

    @classmethod
    def fhir_v401(cls):
        return cls(fhir_version="4.0.1")

    @property
    def bundles(self):
        return tuple(self._bundles)

    def reset(self):
        """Discard every loaded bundle, the derived patient records and the cursor."""
        self._bundles = []
        self._patients = []
        self._index = 0

    def load_bundles(self, bundles):
        # Build all records first so an invalid bundle loads nothing
        records = [PatientRecord(bundle_resources(bundle)) for bundle in bundles]
        self._bundles.extend(bundles)
        self._patients.extend(records)
        logger.debug("Loaded %d bundle(s), %d patient(s) in source", len(records), len(self._patients))

    def has_bundles(self):
        return len(self._bundles) > 0

    def patient_ids(self):
        return [record.id for record in self._patients]

    def current_patient(self):
        if self._index < len(self._patients):
            return self._patients[self._index]
        return None

    def next_patient(self):
        self._index += 1
        return self.current_patient()

    def rewind(self):
        self._index = 0

@contextmanager
def rewound(patient_source):
    """Rewind the patient source cursor when the block exits, however it exits."""
    try:
        yield patient_source
    finally:
        patient_source.rewind()
