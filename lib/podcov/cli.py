#!/usr/bin/env python3

"""Command line entry point: collect coverage from a pod and post-process it."""

import argparse
import os
import sys
from datetime import datetime
from typing import Optional

from lib.base_logger import logger, set_log_level
from lib.podcov import CoverageError
from lib.podcov.builders.oras import PushOptions
from lib.podcov.client import DEFAULT_TIMEOUT, CoverageClient
from lib.podcov.config import DEFAULT_COVERAGE_PORT, ClientConfig, load_kube_api_client

ARTIFACT_REF_FILE_ENV_VAR = "COVERAGE_ARTIFACT_REF_FILE"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collect Go coverage data from a running pod.")
    parser.add_argument("--namespace", type=str, help="Namespace of the pod. Defaults to $APP_NAMESPACE.")
    parser.add_argument("--output-dir", type=str, help="Where coverage is stored. Defaults to $COVERAGE_OUTPUT_DIR.")
    parser.add_argument("--source-dir", type=str, help="Local source tree used to remap report paths.")
    parser.add_argument("--no-remap", action="store_true", help="Keep the paths recorded by the remote binary.")
    parser.add_argument("--log-level", type=str, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Overrides $LOGLEVEL.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    collect = subparsers.add_parser("collect", help="Collect from a pod and generate reports.")
    collect.add_argument("--selector", "-l", type=str, required=True, help="Label selector of the pod, e.g. app=demo.")
    collect.add_argument("--test-name", type=str, required=True)
    collect.add_argument("--port", type=int, default=DEFAULT_COVERAGE_PORT, help="Port of the coverage server.")
    collect.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Seconds to wait for the pod and tunnel.")
    collect.add_argument("--push-registry", type=str, help="Push the results to this OCI registry, e.g. quay.io.")
    collect.add_argument("--push-repository", type=str, help="Repository for the pushed artifact.")
    collect.add_argument(
        "--push-tag", type=str, help="Tag for the pushed artifact. Defaults to <test-name>-<timestamp>."
    )
    collect.add_argument("--push-expires-after", type=str, default="", help="e.g. 1y, sets quay.expires-after.")

    collect_url = subparsers.add_parser("collect-url", help="Collect from a directly reachable coverage server.")
    collect_url.add_argument("--url", type=str, required=True)
    collect_url.add_argument("--test-name", type=str, required=True)
    collect_url.add_argument("--skip-process", action="store_true", help="Only store the binary coverage data.")

    process = subparsers.add_parser("process", help="Generate reports from already collected data.")
    process.add_argument("--test-name", type=str, required=True)
    process.add_argument("--filter", action="append", dest="filters", help="Drop report lines containing this text.")
    process.add_argument("--no-filter", action="store_true", help="Do not filter the report at all.")

    summary = subparsers.add_parser("summary", help="Print statement coverage of a processed test.")
    summary.add_argument("--test-name", type=str, required=True)

    return parser


def build_config(args) -> ClientConfig:
    config = ClientConfig.from_env()
    if args.namespace:
        config.namespace = args.namespace
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.source_dir:
        config.source_dir = args.source_dir
    if args.no_remap:
        config.remap_enabled = False
    return config


def push_options(args) -> Optional[PushOptions]:
    if not args.push_registry:
        return None
    if not args.push_repository:
        raise CoverageError("--push-repository is required together with --push-registry")
    tag = args.push_tag or f"{args.test_name}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
    return PushOptions(
        registry=args.push_registry,
        repository=args.push_repository,
        tag=tag,
        expires_after=args.push_expires_after,
        title=f"Coverage data for {args.test_name}",
    )


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.log_level:
        set_log_level(args.log_level)
    config = build_config(args)

    if args.command == "collect":
        coverage_client = CoverageClient(config, api_client=load_kube_api_client())
        coverage_client.run(
            args.selector,
            args.test_name,
            target_port=args.port,
            timeout=args.timeout,
            push=push_options(args),
            artifact_ref_file=os.environ.get(ARTIFACT_REF_FILE_ENV_VAR),
        )
        coverage_client.print_coverage_summary(args.test_name)
        return

    # the remaining commands never talk to the cluster
    coverage_client = CoverageClient(config)
    if args.command == "collect-url":
        coverage_client.collect_coverage_from_url(args.url, args.test_name)
        if not args.skip_process:
            coverage_client.process_coverage_reports(args.test_name)
            coverage_client.print_coverage_summary(args.test_name)
    elif args.command == "process":
        filters = [] if args.no_filter else args.filters
        coverage_client.process_coverage_reports(args.test_name, filters=filters)
    elif args.command == "summary":
        coverage_client.print_coverage_summary(args.test_name)


def run():
    try:
        main()
    except CoverageError as e:
        logger.error(f"Coverage collection failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
