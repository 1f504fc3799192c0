#!/usr/bin/env python3
"""vcluster syncer CLI.

This module provides the command-line interface of the syncer. It either
brings the sync controllers of one virtual cluster online, or lists the
virtual clusters running on a host cluster.

Architecture:
    - KubernetesClient is the shared HTTP layer for the host and virtual APIs
    - PollingManager drives reconciliation on each API surface
    - StartControllersUseCase runs bring-up: construct, initialize, index, register
    - ListInstancesUseCase finds virtual clusters through their StatefulSets

Environment Variables (start):
    - VCLUSTER_NAME, POD_NAMESPACE, TARGET_NAMESPACE
    - SYNC: Controller toggles, e.g. "nodes,-ingresses"
    - MAP_HOST_SERVICES / MAP_VIRTUAL_SERVICES: Service projections
    - HOST_API_SERVER / HOST_TOKEN: Host API (default: in-cluster)
    - VIRTUAL_API_SERVER / VIRTUAL_TOKEN: Virtual cluster API (required)

Example Usage:
    $ python main.py start                          # Run the syncer
    $ python main.py list                           # List virtual clusters
    $ python main.py list --namespace team-a        # Only one namespace
    $ python main.py list --output json             # JSON output
"""
import argparse
import asyncio
import logging
import signal
import sys

from src.vcluster.api import ClientConfig, KubernetesClient, VClusterError
from src.vcluster.config import SyncerOptions
from src.vcluster.syncer.adapters import (
    DefaultControllerFactory,
    ManagerSyncerRegistrar,
    PollingManager,
    PollingManagerFactory,
    StatefulSetInstanceFinder,
    client_config_for_context,
    current_context,
    default_registry,
    load_kubeconfig,
)
from src.vcluster.syncer.domain import CancellationContext, ControllerContext
from src.vcluster.syncer.use_cases import (
    ListInstancesUseCase,
    StartControllersUseCase,
    disconnect_hint,
    format_json,
    format_table,
)

logger = logging.getLogger("vcluster")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


# ============================================
# start
# ============================================

def install_signal_handlers(loop: asyncio.AbstractEventLoop, root: CancellationContext) -> None:
    """Cancel root on SIGTERM/SIGINT.

    Handlers run on the event loop, so tasks waiting on root wake up at once.
    """
    def handle_shutdown(signum):
        print(f"\n[Main] Received signal {signum}, initiating shutdown...")
        root.cancel()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, handle_shutdown, signum)


async def run_start(args: argparse.Namespace) -> int:
    """Bring up the controllers and run until a signal or a fatal error.

    Returns:
        Process exit code
    """
    try:
        options = SyncerOptions.from_env()
    except VClusterError as e:
        print(f"[Main] Configuration error: {e}")
        return 1
    configure_logging(options.log_level)

    print("=" * 60)
    print(f"vcluster syncer {options.name}")
    print("=" * 60)
    print(f"[Main] Config: {options}")

    if not options.virtual_api_server:
        print("[Main] ERROR: VIRTUAL_API_SERVER is required")
        return 1

    try:
        controllers = options.enabled_controllers()
        host_config = ClientConfig.from_values(
            options.host_api_server,
            options.host_token,
            options.verify_ssl,
        )
        virtual_config = ClientConfig.from_values(
            options.virtual_api_server,
            options.virtual_token,
            options.verify_ssl,
        )
    except VClusterError as e:
        print(f"[Main] Configuration error: {e}")
        return 1

    root = CancellationContext()
    install_signal_handlers(asyncio.get_running_loop(), root)

    async with KubernetesClient(host_config) as host_client, \
            KubernetesClient(virtual_config) as virtual_client:
        local_manager = PollingManager(
            host_client,
            name="local",
            namespace=options.target_namespace,
            poll_interval=options.poll_interval,
            config=host_config,
        )
        virtual_manager = PollingManager(
            virtual_client,
            name="virtual",
            poll_interval=options.poll_interval,
            config=virtual_config,
        )

        ctx = ControllerContext(
            context=root,
            options=options,
            controllers=controllers,
            current_namespace=options.current_namespace,
            local_manager=local_manager,
            virtual_manager=virtual_manager,
            current_namespace_client=host_client,
        )
        use_case = StartControllersUseCase(
            ctx=ctx,
            registry=default_registry(),
            registrar=ManagerSyncerRegistrar(),
            manager_factory=PollingManagerFactory(),
            controller_factory=DefaultControllerFactory(),
        )

        try:
            result = await use_case.execute()
            print(f"[Main] Registered {result.total_units} sync units")
            await use_case.run()
        except VClusterError as e:
            logger.error(f"Syncer failed: {e}")
            print(f"[Main] ERROR: {e}")
            return 1
        finally:
            await use_case.shutdown()

    print("[Main] Shutdown complete")
    return 0


# ============================================
# list
# ============================================

async def run_list(args: argparse.Namespace) -> int:
    """Print the virtual clusters of a kube context.

    Returns:
        Process exit code
    """
    configure_logging("WARNING")

    try:
        kubeconfig = load_kubeconfig(args.kubeconfig)
        active_context = current_context(kubeconfig)
        context = args.context or active_context
        client_config = client_config_for_context(kubeconfig, context)
    except VClusterError as e:
        print(f"[Main] Configuration error: {e}")
        return 1

    async with KubernetesClient(client_config) as client:
        use_case = ListInstancesUseCase(StatefulSetInstanceFinder(lambda _context: client))
        try:
            instances = await use_case.execute(context, namespace=args.namespace)
        except VClusterError as e:
            print(f"[Main] ERROR: {e}")
            return 1

    if args.output == "json":
        print(format_json(instances))
        return 0

    print(format_table(instances, active_context))
    hint = disconnect_hint(active_context)
    if hint:
        print(f"\n{hint}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Sync a virtual cluster with its host cluster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py start                      # Run the syncer (configured through env)
  python main.py list                       # List virtual clusters of the current context
  python main.py list -n team-a -o json     # One namespace, as JSON
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the sync controllers")

    list_parser = subparsers.add_parser("list", help="List virtual clusters")
    list_parser.add_argument(
        "-n", "--namespace",
        default="",
        help="Only list virtual clusters in this namespace (default: all)"
    )
    list_parser.add_argument(
        "--context",
        default="",
        help="Kube context to use (default: current context)"
    )
    list_parser.add_argument(
        "--kubeconfig",
        default=None,
        metavar="FILE",
        help="Kubeconfig file (default: $KUBECONFIG or ~/.kube/config)"
    )
    list_parser.add_argument(
        "-o", "--output",
        choices=("table", "json"),
        default="table",
        help="Output format"
    )

    args = parser.parse_args()

    if args.command == "start":
        sys.exit(asyncio.run(run_start(args)))
    sys.exit(asyncio.run(run_list(args)))


if __name__ == "__main__":
    main()
