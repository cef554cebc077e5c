#!/usr/bin/env python3

import glob
import json
import logging
import os
import sys

from cli_utils import parse_args
from cql_engine import RemoteEngine, library_identifier
from cql_processor import EVALUATE_LIBRARY, CqlProcessor
from message_listener import MessageListener

def load_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)

def load_dependencies(directory):
    """Load every ELM JSON file of a directory, keyed by library name."""
    dependencies = {}
    if not directory:
        return dependencies
    for file_path in sorted(glob.glob(os.path.join(directory, "*.json"))):
        elm_json = load_json(file_path)
        name, _ = library_identifier(elm_json)
        dependencies[name] = elm_json
    return dependencies

def evaluate_bundles(processor, bundle_paths, expression, execution_datetime):
    results = {}
    for bundle_path in bundle_paths:
        print(f"Evaluating {os.path.basename(bundle_path)}...", file=sys.stderr)
        processor.load_bundle(load_json(bundle_path))
        results[processor.patient_id] = processor.evaluate_expression(expression, execution_datetime)
    return results

def main(argv=None):
    # Parse command-line arguments
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    listener = MessageListener()
    processor = CqlProcessor(
        load_json(args.library),
        load_json(args.value_sets) if args.value_sets else {},
        parameters=load_json(args.parameters) if args.parameters else None,
        elm_json_dependencies=load_dependencies(args.dependencies),
        message_listener=listener,
        engine=RemoteEngine(base_url=args.base, timeout=args.timeout)
    )

    results = evaluate_bundles(processor, args.bundle, args.expression or EVALUATE_LIBRARY, args.execution_datetime)

    if args.messages:
        for message in listener.messages:
            print(f"{message.severity} [{message.code}] {message.message}", file=sys.stderr)

    # Output results as JSON
    print(json.dumps(results, indent=2, default=str))

if __name__ == "__main__":
    main()
