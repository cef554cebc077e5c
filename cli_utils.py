#!/usr/bin/env python3

import argparse
import os

from cql_engine import DEFAULT_BASE_URL, DEFAULT_TIMEOUT

def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Evaluate a CQL library (ELM JSON) against FHIR patient bundles.",
        usage="%(prog)s -l LIBRARY -b BUNDLE [-b BUNDLE ...] [-s valuesets] [-d dependencies] "
              "[-p parameters] [-e expression] [-t datetime] [BASE]"
    )
    parser.add_argument("-l", "--library", required=True, help="ELM JSON file of the library to evaluate")
    parser.add_argument("-b", "--bundle", required=True, action="append", help="FHIR patient bundle JSON file (repeatable)")
    parser.add_argument("-s", "--value-sets", help="Value-set cache JSON file")
    parser.add_argument("-d", "--dependencies", help="Directory containing ELM JSON files of included libraries")
    parser.add_argument("-p", "--parameters", help="JSON file with library parameters")
    parser.add_argument("-e", "--expression", help="Expression to evaluate (default: the whole library)")
    parser.add_argument("-t", "--execution-datetime", help="ISO 8601 execution date-time (default: now)")
    parser.add_argument("--timeout", type=float,
                        default=float(os.environ.get("CQL_ENGINE_TIMEOUT", DEFAULT_TIMEOUT)),
                        help=f"Engine request timeout in seconds (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--messages", action="store_true", help="Print messages emitted by the engine")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("base", nargs="?", default=os.environ.get("CQL_ENGINE_BASE_URL", DEFAULT_BASE_URL),
                        help="Base URL of the FHIR server running the CQL engine")
    args = parser.parse_args(argv)

    if args.timeout <= 0:
        parser.error("Timeout must be positive")
    if args.dependencies and not os.path.isdir(args.dependencies):
        parser.error(f"Dependency directory {args.dependencies} does not exist")

    return args
