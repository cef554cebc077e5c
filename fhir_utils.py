#!/usr/bin/env python3

import base64
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
ELM_JSON = "application/elm+json"

def create_session():
    """Return a requests session that retries transient server errors."""
    session = requests.Session()
    retries = Retry(total=3, backoff_factor=0.1, status_forcelist=[500, 502, 503, 504])
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session

def library_template():
    """Return a FHIR Library resource template."""
    return {
        "resourceType": "Library",
        "status": "active",
        "type": {
            "coding": [
                {
                    "system": "http://terminology.hl7.org/CodeSystem/library-type",
                    "code": "logic-library"
                }
            ]
        },
        "content": [
            {
                "contentType": ELM_JSON
            }
        ]
    }

def library_id(name, version=None):
    """Return a valid FHIR resource id for a library name and version."""
    raw = f"{name}-{version}" if version else name
    return re.sub(r"[^A-Za-z0-9\-.]", "-", raw)[:64]

def create_library(name, version, elm_json, url):
    """Create a FHIR Library resource carrying the given ELM JSON."""
    library = library_template()
    library["id"] = library_id(name, version)
    library["name"] = name
    library["url"] = url
    if version:
        library["version"] = version
    elm_data = json.dumps(elm_json).encode("utf-8")
    library["content"][0]["data"] = base64.b64encode(elm_data).decode("utf-8")
    return library

def create_value_set(url, version, codes):
    """Create a FHIR ValueSet resource with an expansion listing the codes."""
    contains = []
    for code in codes:
        entry = {"system": code.get("system"), "code": code.get("code")}
        if code.get("version"):
            entry["version"] = code["version"]
        if code.get("display"):
            entry["display"] = code["display"]
        contains.append(entry)
    value_set = {
        "resourceType": "ValueSet",
        "url": url,
        "status": "active",
        "expansion": {
            "timestamp": datetime.now().astimezone().isoformat(),
            "contains": contains
        }
    }
    if version:
        value_set["version"] = version
    return value_set

def create_bundle(resources):
    """Wrap resources into a FHIR collection Bundle."""
    return {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [{"resource": resource} for resource in resources]
    }

def to_parameter(name, value):
    """Convert a Python value into a FHIR Parameters.parameter entry."""
    parameter = {"name": name}
    # bool before int, bool is a subclass of int
    if isinstance(value, bool):
        parameter["valueBoolean"] = value
    elif isinstance(value, int):
        parameter["valueInteger"] = value
    elif isinstance(value, (float, Decimal)):
        parameter["valueDecimal"] = float(value)
    elif isinstance(value, datetime):
        parameter["valueDateTime"] = value.isoformat()
    elif isinstance(value, date):
        parameter["valueDate"] = value.isoformat()
    elif isinstance(value, str):
        parameter["valueString"] = value
    elif isinstance(value, dict) and "resourceType" in value:
        parameter["resource"] = value
    elif isinstance(value, dict):
        parameter["part"] = to_parameters(value)["parameter"]
    elif value is not None:
        raise TypeError(f"Cannot convert parameter {name!r} of type {type(value).__name__}")
    return parameter

def to_parameters(mapping):
    """Convert a name to value mapping into a FHIR Parameters resource.

    List values become repeated parameters with the same name.
    """
    parameters = []
    for name, value in (mapping or {}).items():
        if isinstance(value, (list, tuple)):
            parameters.extend(to_parameter(name, item) for item in value)
        else:
            parameters.append(to_parameter(name, value))
    return {"resourceType": "Parameters", "parameter": parameters}

def parameter_value(parameter):
    """Return the Python value carried by a single Parameters.parameter entry."""
    if "resource" in parameter:
        return parameter["resource"]
    if "part" in parameter:
        return from_parameters({"parameter": parameter["part"]})
    for key, value in parameter.items():
        if key.startswith("value"):
            return value
    return None

def from_parameters(resource):
    """Convert a FHIR Parameters resource into a name to value mapping.

    Repeated names collect into a list in their original order.
    """
    results = {}
    for parameter in resource.get("parameter", []):
        name = parameter.get("name")
        value = parameter_value(parameter)
        if name in results:
            if not isinstance(results[name], list):
                results[name] = [results[name]]
            results[name].append(value)
        else:
            results[name] = value
    return results

def put_resource(session, base_url, resource_type, resource, timeout=None):
    """Create or update a FHIR resource under its id and return the response."""
    headers = {"Content-Type": FHIR_JSON}
    url = f"{base_url}/{resource_type}/{resource['id']}"
    logger.debug("PUT %s", url)
    response = session.put(url, json=resource, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response.json()

def evaluate_library(session, base_url, library_id, parameters, timeout=None):
    """Run the Library/$evaluate operation and return the output Parameters."""
    headers = {"Content-Type": FHIR_JSON}
    url = f"{base_url}/Library/{library_id}/$evaluate"
    logger.debug("POST %s", url)
    response = session.post(url, json=parameters, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response.json()
