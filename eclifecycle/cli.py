"""
Command line entry points.

    eclifecycle restore [flags]
    eclifecycle upgrade --installation installation.yaml
    eclifecycle upgrade-job create --installation installation.yaml --local-artifact-mirror-image IMAGE
"""

import argparse
import asyncio
import functools
import logging
import sys
from typing import Any, Dict, List, Optional

import yaml

from .config.loader import LifecycleConfig, load_config
from .errors.errors import ErrorHandler, NothingElseToAddError, error_formatter, new_configuration_error
from .kube.client import ClusterClient
from .prompts import Prompter
from .restore.host import SystemHostOperations
from .restore.orchestrator import RestoreOrchestrator
from .upgrade.orchestrator import UpgradeOrchestrator

logger = logging.getLogger(__name__)

# flag attribute -> (section, field)
_RESTORE_FLAGS = {
    'data_dir': ('runtime', 'data_dir'),
    'local_artifact_mirror_port': ('runtime', 'local_artifact_mirror_port'),
    'airgap_bundle': ('restore', 'airgap_bundle'),
    's3_endpoint': ('backup_store', 'endpoint'),
    's3_region': ('backup_store', 'region'),
    's3_bucket': ('backup_store', 'bucket'),
    's3_prefix': ('backup_store', 'prefix'),
    's3_access_key_id': ('backup_store', 'access_key_id'),
    's3_secret_access_key': ('backup_store', 'secret_access_key'),
    'cidr': ('network', 'global_cidr'),
    'pod_cidr': ('network', 'pod_cidr'),
    'service_cidr': ('network', 'service_cidr'),
}


def create_argument_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI usage."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '--config', '-c',
        help='Path to lifecycle configuration file'
    )
    common.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser = argparse.ArgumentParser(
        description="Embedded cluster restore and upgrade"
    )
    commands = parser.add_subparsers(dest='command', required=True)

    restore = commands.add_parser('restore', parents=[common], help='Restore the cluster from a backup')
    restore.add_argument('--airgap-bundle', help='Path to the airgap bundle')
    restore.add_argument('--data-dir', help='Path to the data directory')
    restore.add_argument(
        '--local-artifact-mirror-port',
        type=int,
        help='Port for the local artifact mirror; takes precedence over the port recorded in the backup'
    )
    restore.add_argument(
        '--cidr',
        help='CIDR block for the cluster, split evenly between pods and services'
    )
    restore.add_argument('--pod-cidr', help='Pod network CIDR; requires --service-cidr')
    restore.add_argument('--service-cidr', help='Service network CIDR; requires --pod-cidr')
    restore.add_argument('--s3-endpoint', help='S3 endpoint of the backup storage location')
    restore.add_argument('--s3-region', help='S3 region')
    restore.add_argument('--s3-bucket', help='S3 bucket')
    restore.add_argument('--s3-prefix', help='Prefix of the backups in the bucket')
    restore.add_argument('--s3-access-key-id', help='S3 access key id')
    restore.add_argument('--s3-secret-access-key', help='S3 secret access key')
    restore.add_argument(
        '--skip-store-validation',
        action='store_true',
        help='Do not check that the backup storage location contains backups'
    )
    restore.add_argument('--yes', '-y', action='store_true', help='Assume yes to every question')

    upgrade = commands.add_parser('upgrade', parents=[common], help='Upgrade the cluster to an installation')
    upgrade.add_argument('--installation', required=True, help='Path to the installation file')

    upgrade_job = commands.add_parser('upgrade-job', help='Manage upgrade jobs')
    job_commands = upgrade_job.add_subparsers(dest='job_command', required=True)
    create = job_commands.add_parser('create', parents=[common], help='Prepare an upgrade and start its job')
    create.add_argument('--installation', required=True, help='Path to the installation file')
    create.add_argument('--local-artifact-mirror-image', help='Local artifact mirror image for airgap upgrades')

    return parser


def apply_restore_flags(config: LifecycleConfig, args: argparse.Namespace) -> None:
    """Copy restore flags onto the configuration."""
    for attr, (section_name, field_name) in _RESTORE_FLAGS.items():
        value = getattr(args, attr, None)
        if value is not None:
            setattr(getattr(config, section_name), field_name, value)

    # a network flag replaces whatever network the files configured
    if args.cidr:
        if args.pod_cidr is None and args.service_cidr is None:
            config.network.pod_cidr = ""
            config.network.service_cidr = ""
    elif args.pod_cidr or args.service_cidr:
        config.network.global_cidr = ""

    if args.airgap_bundle:
        config.restore.airgap = True
    if args.skip_store_validation:
        config.restore.skip_store_validation = True
    if args.yes:
        config.restore.assume_yes = True


def load_installation(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            installation = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise new_configuration_error("cli", "load_installation", f"unable to read installation file {path}", e)

    if not isinstance(installation, dict) or not (installation.get("metadata") or {}).get("name"):
        raise new_configuration_error("cli", "load_installation", f"installation file {path} has no name")
    return installation


async def run_restore(config: LifecycleConfig, port_overridden: bool) -> None:
    # connects on first use, once the restore has installed the cluster
    kube = ClusterClient(config.runtime.path_to_kubeconfig())
    orchestrator = RestoreOrchestrator(
        kube,
        config,
        SystemHostOperations(config),
        Prompter(assume_yes=config.restore.assume_yes),
        port_overridden=port_overridden,
    )
    await orchestrator.run()


async def run_upgrade(config: LifecycleConfig, installation: Dict[str, Any]) -> None:
    kube = ClusterClient(config.runtime.kubeconfig or None)
    await UpgradeOrchestrator(kube, config).upgrade(installation)


async def run_create_upgrade_job(config: LifecycleConfig, installation: Dict[str, Any], image: str) -> None:
    kube = ClusterClient(config.runtime.kubeconfig or None)
    await UpgradeOrchestrator(kube, config).create_upgrade_job(installation, image)


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI usage."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        overrides = None
        if args.command == 'restore':
            overrides = functools.partial(apply_restore_flags, args=args)
        config = load_config(args.config, overrides)
        if not args.verbose:
            logging.getLogger().setLevel(config.logging.level.upper())

        if args.command == 'restore':
            asyncio.run(run_restore(config, args.local_artifact_mirror_port is not None))
        elif args.command == 'upgrade':
            asyncio.run(run_upgrade(config, load_installation(args.installation)))
        else:
            image = args.local_artifact_mirror_image or config.upgrade.local_artifact_mirror_image
            asyncio.run(run_create_upgrade_job(config, load_installation(args.installation), image))

    except NothingElseToAddError:
        logger.debug("Stopped by the operator")
    except KeyboardInterrupt:
        logging.error("Interrupted")
        sys.exit(1)
    except Exception as e:
        # verbose runs also get the severity-level log with the cause's traceback
        error = ErrorHandler("cli", logger if args.verbose else None).handle(e, args.command)
        logging.error(f"{args.command} failed: {error_formatter.to_user_friendly(error)}")
        sys.exit(1)


if __name__ == '__main__':
    main()
