"""
Restore Orchestrator.

Drives a disaster-recovery restore as an ordered list of steps. The persisted
state names the step to start from; every step from there to the end runs in
the same invocation, and the state is saved before each step so an
interrupted restore picks up at the step that did not finish.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from .backups import (
    LOCAL_ARTIFACT_MIRROR_PORT_ANNOTATION, IS_HA_ANNOTATION, REGISTRY_ANNOTATION,
    ReplicatedBackup, get_replicated_backup, list_replicated_backups
)
from .compatibility import (
    ClusterNetwork, ReleaseInfo, desired_cluster_network, is_replicated_backup_restorable,
    pick_backup_to_restore, read_cluster_network
)
from .components import Component, ComponentRestorer
from .host import HostOperations
from .state import RestoreState, StateStore
from .store import S3BackupStore, configure_velero_backup_store
from ..kube.helpers import count_control_plane_nodes
from ..kube.installation import (
    InstallationState, get_latest_installation, runtime_config, update_installation,
    update_installation_status
)
from ..kube.wait import Backoff, PermanentError, Progress, wait_for_nodes, wait_until
from ..errors.errors import (
    ErrorCode, InvalidBackupsError, NothingElseToAddError, StandardError, WaitTimeoutError,
    new_configuration_error, new_restore_error
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"
MIN_HA_CONTROLLERS = 3

Step = Callable[[], Awaitable[None]]


def _format_timestamp(backup: ReplicatedBackup) -> str:
    stamp = backup.completion_timestamp()
    return stamp.strftime(TIMESTAMP_FORMAT) if stamp else "unknown"


def _incompatible(operation: str, message: str) -> StandardError:
    return StandardError(ErrorCode.INCOMPATIBLE_BACKUP, "restore", operation, message)


class RestoreOrchestrator:
    """Resumable restore of a cluster from a replicated backup."""

    def __init__(
        self,
        kube,
        config,
        host: HostOperations,
        prompter,
        store: Optional[S3BackupStore] = None,
        backoff: Optional[Backoff] = None,
        progress: Optional[Progress] = None,
        port_overridden: bool = False,
    ):
        self.kube = kube
        self.config = config
        self.host = host
        self.prompter = prompter
        self.store = store or S3BackupStore.from_config(config.backup_store)
        self.backoff = backoff or Backoff.from_config(config.wait)
        self.progress = progress or logger.info
        self.port_overridden = port_overridden

        self.release = ReleaseInfo.from_config(config.release)
        self.airgap = config.restore.airgap
        self.state_store = StateStore(kube, config.namespaces.embedded_cluster)
        self.components = ComponentRestorer(kube, config, self.backoff, self.progress)
        self.backup: Optional[ReplicatedBackup] = None

    def steps(self) -> List[Tuple[RestoreState, Step]]:
        return [
            (RestoreState.NEW, self.step_new),
            (RestoreState.CONFIRM_BACKUP, self.step_confirm_backup),
            (RestoreState.RESTORE_EC_INSTALL, self.step_restore_ec_install),
            (RestoreState.RESTORE_ADMIN_CONSOLE, self.step_restore_admin_console),
            (RestoreState.WAIT_FOR_NODES, self.step_wait_for_nodes),
            (RestoreState.RESTORE_SEAWEEDFS, self.step_restore_seaweedfs),
            (RestoreState.RESTORE_REGISTRY, self.step_restore_registry),
            (RestoreState.RESTORE_EMBEDDED_CLUSTER_OPERATOR, self.step_restore_operator),
            (RestoreState.RESTORE_EXTENSIONS, self.step_restore_extensions),
            (RestoreState.RESTORE_APP, self.step_restore_app),
        ]

    async def run(self) -> None:
        """Run the restore from the persisted state to completion."""
        state, _ = await self.state_store.load()
        logger.debug(f"Restore state is: {state.value}")

        if state != RestoreState.NEW:
            resume = self.prompter.confirm(
                "A previous restore operation was detected. Would you like to resume?", default=True
            )
            if not resume:
                await self.state_store.reset()
                state = RestoreState.NEW

        if state != RestoreState.NEW:
            self.backup = await self._backup_from_state()
            if self.backup is not None:
                logger.info(f'Resuming restore from backup "{self.backup.name}" ({_format_timestamp(self.backup)})')
                self._apply_backup_overrides(self.backup)
            elif state.index > RestoreState.CONFIRM_BACKUP.index:
                raise new_restore_error("resume", "unable to resume: no backup recorded in the restore state")

        await self._apply_installation_runtime_config(state)

        for step_state, step in self.steps()[state.index:]:
            if step_state != RestoreState.NEW:
                await self.state_store.save(step_state, self.backup.name if self.backup else "")
            await step()

    async def _backup_from_state(self) -> Optional[ReplicatedBackup]:
        name = await self.state_store.backup_name()
        if not name:
            return None

        try:
            backup = await get_replicated_backup(self.kube, self.config.namespaces.velero, name)
        except StandardError as e:
            raise new_restore_error("resume", f'unable to resume: unable to get backup "{name}"', e)

        restorable, reason = is_replicated_backup_restorable(
            backup, self.release, self.airgap, self._cluster_network(), self.config.runtime.data_dir
        )
        if not restorable:
            raise _incompatible("resume", f'unable to resume: backup "{name}" {reason}')
        return backup

    def _cluster_network(self) -> ClusterNetwork:
        return read_cluster_network(self.config.network.k0s_config_path)

    def _apply_backup_overrides(self, backup: ReplicatedBackup) -> None:
        """Adopt the local artifact mirror port recorded in the backup."""
        if self.port_overridden:
            return
        value = backup.annotation(LOCAL_ARTIFACT_MIRROR_PORT_ANNOTATION)
        if not value:
            return
        try:
            port = int(value)
        except ValueError:
            port = 0
        if not 0 < port < 65536:
            raise new_configuration_error(
                "restore", "override_runtime_config", f"invalid local artifact mirror port {value!r} in backup"
            )
        logger.debug(f'Updating local artifact mirror port to {port} from backup "{backup.name}"')
        self.config.runtime.local_artifact_mirror_port = port

    async def _apply_installation_runtime_config(self, state: RestoreState) -> None:
        """Augment the runtime config from the latest installation, when there is one."""
        try:
            installation = await get_latest_installation(self.kube)
        except StandardError as e:
            logger.debug(
                f"Unable to get runtime config from installation, this is expected if the "
                f"installation is not yet available (restore state={state.value}): {e}"
            )
            return

        rc = runtime_config(installation)
        runtime = self.config.runtime
        if rc.get("dataDir"):
            runtime.data_dir = rc["dataDir"]
        if (rc.get("adminConsole") or {}).get("port"):
            runtime.admin_console_port = rc["adminConsole"]["port"]
        if (rc.get("localArtifactMirror") or {}).get("port") and not self.port_overridden:
            runtime.local_artifact_mirror_port = rc["localArtifactMirror"]["port"]

    async def step_new(self) -> None:
        await self.host.verify_no_installation()

        if not self.store.has_data():
            self.store.prompt(self.prompter)

        if not self.config.restore.skip_store_validation:
            logger.debug("Validating backup store configuration")
            await self.store.validate_async()

        await self.host.configure_network_manager()
        await self.host.materialize_files(self.config.restore.airgap_bundle)
        await self.host.run_host_preflights()

        network = desired_cluster_network(self.config.network)
        logger.debug(f"Using pod CIDR {network.pod_cidr} and service CIDR {network.service_cidr}")
        await self.host.write_cluster_config(network)

        self.progress("Installing cluster")
        await self.host.install_cluster()
        await configure_velero_backup_store(self.kube, self.config.namespaces.velero, self.store)

    async def _list_backups(self) -> List[ReplicatedBackup]:
        """List replicated backups, waiting for velero to sync them from the store."""
        found: List[ReplicatedBackup] = []

        async def check() -> bool:
            try:
                backups = await list_replicated_backups(self.kube, self.config.namespaces.velero)
            except StandardError as e:
                raise PermanentError(new_restore_error("list_backups", "unable to list backups", e))
            if backups:
                found.extend(backups)
                return True
            logger.debug("No backups found yet...")
            return False

        budget = Backoff(
            steps=max(self.config.restore.backup_list_tries, 1),
            duration=self.config.restore.backup_list_interval,
            factor=1.0,
            jitter=0.0,
        )
        try:
            await wait_until(check, budget)
        except WaitTimeoutError:
            raise new_restore_error("list_backups", "timed out waiting for backups to become available")
        logger.debug(f"Found {len(found)} backups")
        return found

    async def step_confirm_backup(self) -> None:
        network = self._cluster_network()

        self.progress("Waiting for backups to become available")
        candidates = await self._list_backups()

        valid, invalid_names, invalid_reasons = [], [], []
        for backup in candidates:
            restorable, reason = is_replicated_backup_restorable(
                backup, self.release, self.airgap, network, self.config.runtime.data_dir
            )
            if restorable:
                valid.append(backup)
            else:
                invalid_names.append(backup.name)
                invalid_reasons.append(reason)

        if not valid:
            raise InvalidBackupsError(invalid_names, invalid_reasons)

        if len(valid) == 1:
            self.progress("Found 1 restorable backup!")
        else:
            self.progress(f"Found {len(valid)} restorable backups!")

        backup = pick_backup_to_restore(valid)
        logger.debug(f"Backup to restore: {backup.name}")

        if not self.prompter.confirm(f'Restore from backup "{backup.name}" ({_format_timestamp(backup)})?', default=True):
            logger.info("Aborting restore...")
            raise NothingElseToAddError("restore aborted by the operator")

        self.backup = backup

    async def step_restore_ec_install(self) -> None:
        logger.debug(f'Restoring embedded cluster installation from backup "{self.backup.name}"')
        await self.components.restore(self.backup, Component.EC_INSTALL)

        logger.debug(f'Updating installation from backup "{self.backup.name}"')
        await self._reconcile_installation()

        logger.debug(f'Updating local artifact mirror service from backup "{self.backup.name}"')
        await self.host.update_local_artifact_mirror()

    async def _reconcile_installation(self) -> None:
        """Record the invocation's runtime settings on the restored installation."""
        try:
            installation = await get_latest_installation(self.kube)
            spec = installation.setdefault("spec", {})
            rc = spec.get("runtimeConfig") or {}
            mirror = rc.get("localArtifactMirror") or {}
            mirror["port"] = self.config.runtime.local_artifact_mirror_port
            rc["localArtifactMirror"] = mirror
            spec["runtimeConfig"] = rc

            installation = await update_installation(self.kube, installation)
            await update_installation_status(self.kube, installation, InstallationState.KUBERNETES_INSTALLED)
        except StandardError as e:
            raise new_restore_error("reconcile_installation", "unable to update installation from backup", e)

    async def step_restore_admin_console(self) -> None:
        logger.debug(f'Restoring admin console from backup "{self.backup.name}"')
        await self.components.restore(self.backup, Component.ADMIN_CONSOLE)

        logger.debug("Installing manager")
        await self.host.install_manager()

    def _is_high_availability(self) -> bool:
        value = self.backup.annotation(IS_HA_ANNOTATION)
        if value is None:
            raise new_restore_error("high_availability", "high availability annotation not found in backup")
        return value == "true"

    async def step_wait_for_nodes(self) -> None:
        high_availability = self._is_high_availability()

        url = await self.host.admin_console_url()
        logger.info(f"Visit the Admin Console if you need to add nodes to the cluster: {url}")

        while True:
            answer = self.prompter.input("Type 'continue' when you are done adding nodes:")
            if answer != "continue":
                logger.info("Please type 'continue' to proceed")
                continue
            if high_availability:
                controllers = await count_control_plane_nodes(self.kube)
                if controllers < MIN_HA_CONTROLLERS:
                    logger.info(
                        "You are restoring a high-availability cluster, which requires at least "
                        f"{MIN_HA_CONTROLLERS} controller nodes. You currently have {controllers}. "
                        "Please add more controller nodes."
                    )
                    continue
            break

        try:
            await wait_for_nodes(self.kube, self.backoff, self.progress)
        except StandardError as e:
            raise new_restore_error("wait_for_nodes", "unable to wait for nodes", e)
        self.progress("All nodes are ready!")

    async def step_restore_seaweedfs(self) -> None:
        # Only airgap high-availability clusters run SeaweedFS.
        if not self._is_high_availability() or not self.airgap:
            return
        logger.debug(f'Restoring seaweedfs from backup "{self.backup.name}"')
        await self.components.restore(self.backup, Component.SEAWEEDFS)

    async def step_restore_registry(self) -> None:
        if not self.airgap:
            return
        logger.debug(f'Restoring embedded cluster registry from backup "{self.backup.name}"')
        await self.components.restore(self.backup, Component.REGISTRY)

        address = self.backup.annotation(REGISTRY_ANNOTATION)
        if not address:
            raise new_restore_error("restore_registry", "unable to read registry address from backup")
        await self.host.add_insecure_registry(address)

    async def step_restore_operator(self) -> None:
        logger.debug(f'Restoring embedded cluster operator from backup "{self.backup.name}"')
        await self.components.restore(self.backup, Component.EMBEDDED_CLUSTER_OPERATOR)

    async def step_restore_extensions(self) -> None:
        logger.debug("Installing extensions")
        await self.host.install_extensions(self.airgap)

    async def step_restore_app(self) -> None:
        logger.debug(f'Restoring app from backup "{self.backup.name}"')
        await self.components.restore(self.backup, Component.APP)

        logger.debug("Resetting restore state")
        await self.state_store.reset()
