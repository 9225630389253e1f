#!/usr/bin/env python3
"""external-mdns - Kubernetes to mDNS synchronization

Advertises Kubernetes Services and Ingresses on the local network over
multicast DNS, so that ``<name>.<namespace>.local`` (and friends) resolve
without a DNS server.

Published names, per resource:
    <name>.<namespace>.local    A/AAAA + PTR
    <name>-<namespace>.local    A/AAAA + PTR (for resolvers without
                                multi-label mDNS support)
    <name>.local                A/AAAA + PTR, only when the resource is in the
                                default namespace, carries the
                                without-namespace annotation, --without-namespace
                                is set, or it comes from an Ingress

Annotations (Services):
    external-mdns.blakecovarrubias.com/hostname           Comma-separated names
                                                          to publish instead of
                                                          the service name
    external-mdns.blakecovarrubias.com/without-namespace  "true" to also publish
                                                          <name>.local

Configuration (flag / EXTERNAL_MDNS_<NAME> env var / external-mdns.yaml):
    --source                     service, ingress (default: service)
    --namespace                  Limit to one namespace (default: all)
    --default-namespace          Namespace published without qualifier
                                 (default: default)
    --without-namespace          Publish <name>.local for everything
    --publish-internal-services  Publish ClusterIP/NodePort services
    --record-ttl                 Record TTL in seconds (default: 120)
    --expose-ipv4 / --expose-ipv6
                                 Address families to publish (default: IPv4)
    --kubeconfig / --master      Cluster access outside of a pod
    --resync-period              Seconds between full relists (default: 300)
    --cache-sync-timeout         Seconds to wait for initial sync (default: 60)
    --debug / --log-level        Logging verbosity
    --test                       Publish a fixed router.local record only
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from external_mdns.config import ConfigError, Settings, load_settings
from external_mdns.kubernetes import Informer, KubeConfigError, KubernetesClient, load_cluster_config
from external_mdns.pipeline import Controller, DispatchError, Dispatcher, EventPipeline
from external_mdns.responder import MdnsResponder, RecordPublisher, ResponderError
from external_mdns.sources import IngressSource, ResourceSource, ServiceSource

__version__ = "0.4.0"

TEST_RECORDS = [
    "router.local. 60 IN A 192.168.1.254",
    "254.1.168.192.in-addr.arpa. 60 IN PTR router.local.",
]

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), None)
    if not isinstance(level, int):
        logger.warning(f"Unknown log level '{settings.log_level}', using INFO")
        level = logging.INFO
    logging.getLogger().setLevel(level)


# =============================================================================
# Command Line
# =============================================================================


def _flag_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "y", "on"}:
        return True
    if lowered in {"0", "false", "no", "n", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="external-mdns",
        description="Advertise Kubernetes services and ingresses over mDNS.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default="", help="config file (default: ./external-mdns.yaml)")

    for name, help_text in [
        ("debug", "Enable debug logging"),
        ("publish-internal-services", "Publish ClusterIP services"),
        ("test", "Run in testing mode (no connection to Kubernetes)"),
        ("without-namespace", "Publish shorter mDNS names without namespace"),
        ("expose-ipv4", "Publish IPv4 addresses"),
        ("expose-ipv6", "Publish IPv6 addresses"),
    ]:
        parser.add_argument(
            f"--{name}", type=_flag_bool, nargs="?", const=True, default=None, help=help_text
        )

    parser.add_argument("--kubeconfig", help="Absolute path to the kubeconfig file")
    parser.add_argument("--master", help="URL to Kubernetes master")
    parser.add_argument("--namespace", help="Limit sources of endpoints to a specific namespace")
    parser.add_argument("--default-namespace", help="Namespace whose names are also published bare")
    parser.add_argument("--record-ttl", type=int, help="DNS record TTL")
    parser.add_argument(
        "--source",
        action="append",
        help="Resource types to query, repeatable or comma-separated (service, ingress)",
    )
    parser.add_argument("--resync-period", type=int, help="Seconds between full relists")
    parser.add_argument("--cache-sync-timeout", type=int, help="Seconds to wait for initial sync")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    return parser


def _flags(args: argparse.Namespace) -> Dict[str, Any]:
    values = {k: v for k, v in vars(args).items() if k != "config"}
    if values.get("source"):
        values["source"] = ",".join(values["source"])
    return values


# =============================================================================
# Wiring
# =============================================================================


def build_sources(
    settings: Settings, client: KubernetesClient, pipeline: EventPipeline
) -> List[ResourceSource]:
    sources: List[ResourceSource] = []
    for name in settings.source:
        informer = Informer(
            client,
            "ingresses" if name == "ingress" else "services",
            namespace=settings.namespace,
            resync_period=settings.resync_period,
        )
        if name == "ingress":
            sources.append(IngressSource(informer, pipeline))
        else:
            sources.append(
                ServiceSource(informer, pipeline, publish_internal=settings.publish_internal_services)
            )
    return sources


def run_test_mode(publisher: RecordPublisher, stop: threading.Event) -> None:
    for record in TEST_RECORDS:
        logger.info(f"Publishing new DNS record: {record}")
        publisher.publish(record)
    stop.wait()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(_flags(args), config_file=args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(settings)
    logger.info(f"external-mdns {__version__}: {', '.join(settings.source)} -> mDNS")
    logger.debug(f"Starting external-mdns with configuration: {settings.as_dict()}")

    stop = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    responder = MdnsResponder()
    try:
        responder.start()

        if settings.test:
            run_test_mode(responder, stop)
            return

        client = KubernetesClient(load_cluster_config(settings.kubeconfig, settings.master))
        pipeline = EventPipeline()
        controller = Controller(
            sources=build_sources(settings, client, pipeline),
            pipeline=pipeline,
            dispatcher=Dispatcher(responder, settings.record_policy()),
            cache_sync_timeout=settings.cache_sync_timeout,
        )
        controller.run(stop)

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except KubeConfigError as e:
        logger.error(f"Failed to create Kubernetes client: {e}")
        sys.exit(1)
    except (DispatchError, ResponderError) as e:
        logger.error(f"Fatal responder error: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"Failed to start mDNS responder: {e}")
        sys.exit(1)
    finally:
        stop.set()
        responder.close()


if __name__ == "__main__":
    main()
