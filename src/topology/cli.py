"""CLI handlers for topology verbs (provision, deprovision, discover).

Usage:
    vpc-driver provision [--config FILE] [--dry-run] [--json-output] [--verbose]
    vpc-driver deprovision [--config FILE] [--dry-run] [--yes] [--report-dir DIR]
    vpc-driver discover [--config FILE] [--json-output]
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

from config import ConfigurationError, TopologyConfig, load_config
from gateway.aws import AwsGateway
from gateway.base import GatewayError
from readiness import validate_readiness
from reporting.report import connection_summary, format_connection_summary
from topology.deprovisioner import Deprovisioner
from topology.discoverer import Discoverer
from topology.provisioner import ProvisionError, Provisioner
from topology.state import Topology

logger = logging.getLogger(__name__)

VERB_DESCRIPTIONS = {
    'provision': 'Create the three-tier topology',
    'deprovision': 'Delete every resource carrying the project tag',
    'discover': 'List resources carrying the project tag',
}


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'vpc-driver {verb}',
        description=VERB_DESCRIPTIONS[verb],
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to config file (default: $VPC_DRIVER_CONFIG or ./vpc-driver.yaml)',
    )
    parser.add_argument(
        '--region',
        help='Cloud region (overrides config)',
    )
    parser.add_argument(
        '--project', '-p',
        dest='project_tag',
        help='Project tag identifying the topology (overrides config)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    if verb != 'discover':
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Preview operations without executing',
        )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_config(args) -> TopologyConfig:
    """Load configuration from parsed args.

    Raises:
        SystemExit: On configuration errors
    """
    overrides = {'region': args.region, 'project_tag': args.project_tag}
    try:
        return load_config(args.config, **overrides)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _make_gateway(config: TopologyConfig) -> AwsGateway:
    return AwsGateway(config.region, poll_interval=config.poll_interval)


def _run_preflight(args, config: TopologyConfig, check_address: bool) -> Optional[int]:
    """Run preflight checks for verb commands.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or getattr(args, 'dry_run', False):
        return None

    errors = validate_readiness(config, check_address=check_address)
    if errors:
        print("\nPre-flight validation failed:")
        for error in errors:
            print(f"  ✗ {error}")
        print("\nUse --skip-preflight to bypass these checks")
        print()
        return 1
    logger.info("Pre-flight validation passed")
    return None


def _emit_json(verb: str, success: bool, topology: Optional[Topology], duration: float,
               **extra) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    if topology is not None:
        output.update(topology.to_dict())
    output.update(extra)
    print(json.dumps(output, indent=2, default=str))


def _print_topology(topology: Topology) -> None:
    """Print a table of discovered handles."""
    print(f"\nTopology '{topology.project_tag}' ({len(topology)} resources):")
    print(f"  {'RESOURCE':<28} {'KIND':<28} ID")
    for handle in topology:
        print(f"  {handle.name:<28} {handle.kind:<28} {handle.id}")
    print()


def provision_main(argv: list) -> int:
    """Handle 'provision' verb."""
    parser = _common_parser('provision')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)

    preflight_rc = _run_preflight(args, config, check_address=True)
    if preflight_rc is not None:
        return preflight_rc

    provisioner = Provisioner(gateway=_make_gateway(config), dry_run=args.dry_run)

    logger.info(f"Provisioning topology '{config.project_tag}' in {config.region}")
    start = time.time()
    try:
        topology = provisioner.provision(config)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ProvisionError as e:
        duration = time.time() - start
        logger.error(f"Provisioning failed at '{e.node_name}': {e}")
        if args.json_output:
            _emit_json('provision', False, e.topology, duration, error=str(e), failed_node=e.node_name)
        else:
            print(f"\nProvisioning failed at '{e.node_name}': {e}", file=sys.stderr)
            print(
                f"Resources created so far are tagged Project={config.project_tag}. "
                "Run 'vpc-driver deprovision' to remove them.",
                file=sys.stderr,
            )
        return 1
    duration = time.time() - start

    if args.dry_run:
        return 0

    summary = connection_summary(topology, config.login_user, config.key_path)
    if args.json_output:
        _emit_json('provision', True, topology, duration, connection=summary)
    else:
        print(format_connection_summary(summary))
    return 0


def discover_main(argv: list) -> int:
    """Handle 'discover' verb."""
    parser = _common_parser('discover')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)

    preflight_rc = _run_preflight(args, config, check_address=False)
    if preflight_rc is not None:
        return preflight_rc

    start = time.time()
    try:
        topology = Discoverer(_make_gateway(config), config).discover()
    except GatewayError as e:
        print(f"Error: discovery failed: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        _emit_json('discover', True, topology, time.time() - start)
    elif topology.is_empty:
        print(f"No resources tagged Project={config.project_tag} in {config.region}")
    else:
        _print_topology(topology)
    return 0


def deprovision_main(argv: list) -> int:
    """Handle 'deprovision' verb."""
    parser = _common_parser('deprovision')
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Write markdown and JSON teardown reports to this directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args)

    preflight_rc = _run_preflight(args, config, check_address=False)
    if preflight_rc is not None:
        return preflight_rc

    gateway = _make_gateway(config)
    try:
        topology = Discoverer(gateway, config).discover()
    except GatewayError as e:
        print(f"Error: discovery failed: {e}", file=sys.stderr)
        return 1

    if topology.is_empty:
        if args.json_output:
            _emit_json('deprovision', True, topology, 0.0)
        else:
            print(f"Nothing to clean up: no resources tagged Project={config.project_tag}")
        return 0

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will delete every resource tagged Project={config.project_tag} "
              f"in {config.region}.")
        _print_topology(topology)
        print("This action cannot be undone.")
        try:
            response = input("Type 'yes' to continue: ").strip().lower()
        except EOFError:
            response = ''
        if response != 'yes':
            print("Cleanup cancelled.")
            return 0

    deprovisioner = Deprovisioner(gateway=gateway, config=config, dry_run=args.dry_run)
    report = deprovisioner.deprovision(topology)

    if args.report_dir:
        report.write_json(args.report_dir)
        path = report.write_markdown(args.report_dir)
        logger.info(f"Teardown report written to {path}")

    if args.json_output:
        print(json.dumps(dict(report.to_dict(), verb='deprovision'), indent=2))
    else:
        print(report.format_summary())
    return 0
