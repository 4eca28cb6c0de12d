#!/usr/bin/env python3
"""mesos-dns-sync - Mesos task DNS synchronization

Keeps the cluster DNS zone in a replicated store in sync with the tasks running
on Mesos. Each running task gets ``agentip``, ``containerip`` and ``autoip``
records under ``<task>.<framework>.<scheme>.<domain>``; the zone also carries
SOA/NS apex records, ``master.<domain>`` for every Mesos master and
``leader.<domain>`` for this node.

Environment variables:

    Mesos:
        MESOS_URL              Mesos master base URL (default: http://leader.mesos:5050)
        MESOS_USERNAME         Operator API username (optional)
        MESOS_PASSWORD         Operator API password (optional)
        MESOS_VERIFY_TLS       Verify TLS certificates (default: true)

    Replicated store:
        STORE_PROVIDER         "http" or "file" (default: http)
        STORE_URL              HTTP store base URL (default: http://127.0.0.1:62080)
        STORE_USERNAME         HTTP store username (optional)
        STORE_PASSWORD         HTTP store password (optional)
        STORE_VERIFY_TLS       Verify HTTP store TLS certificates (default: true)
        STORE_PATH             JSON file for the file store (default: /data/zones.json)

    Zone:
        DNS_DOMAIN             Cluster domain (default: dcos.thisdcos.directory)
        DNS_RECORD_TTL         TTL of task, master and leader records (default: 5)
        NODE_IP                IP of this node, used for leader.<domain> (required)

    Masters:
        DNS_CONFIG_PATH        YAML file, or directory of *.yaml files, re-read on every
                               masters poll (default: /config/dns.yaml)
                               Example config file:
                                 mesos_resolvers:
                                   - "10.0.0.1:5050"
                                   - "10.0.0.2"
        MESOS_RESOLVERS        Comma-separated resolver list, used when no config file
                               provides one. Entries are "ip" or "ip:port".

    Runtime:
        MASTERS_POLL_INTERVAL_MS   Masters poll interval (default: 5000)
        PUSH_OPS_INTERVAL_MS       Minimum interval between store updates (default: 1000)
        SUBSCRIBE_RETRY_MS         Delay before retrying a failed subscription (default: 100)
        REQUEST_TIMEOUT_SECONDS    HTTP request timeout (default: 5)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, List, Optional

import yaml

from mesos_dns_sync.mesos import MesosOperatorEventSource
from mesos_dns_sync.records import DEFAULT_DOMAIN, DEFAULT_TTL
from mesos_dns_sync.stores import (
    FileReplicatedStore,
    HTTPReplicatedStore,
    ReplicatedStore,
    StoreError,
)
from mesos_dns_sync.syncer import MesosDNSSyncer, SyncTerminated

# =============================================================================
# Configuration
# =============================================================================

# Mesos configuration
MESOS_URL = os.getenv("MESOS_URL", "http://leader.mesos:5050")
MESOS_USERNAME = os.getenv("MESOS_USERNAME", "")
MESOS_PASSWORD = os.getenv("MESOS_PASSWORD", "")
MESOS_VERIFY_TLS = os.getenv("MESOS_VERIFY_TLS", "true")

# Store configuration
STORE_PROVIDER = os.getenv("STORE_PROVIDER", "http").lower().strip()
STORE_URL = os.getenv("STORE_URL", "http://127.0.0.1:62080")
STORE_USERNAME = os.getenv("STORE_USERNAME", "")
STORE_PASSWORD = os.getenv("STORE_PASSWORD", "")
STORE_VERIFY_TLS = os.getenv("STORE_VERIFY_TLS", "true")
STORE_PATH = os.getenv("STORE_PATH", "/data/zones.json")

# Zone configuration
DNS_DOMAIN = os.getenv("DNS_DOMAIN", DEFAULT_DOMAIN).strip().rstrip(".").lower()
DNS_RECORD_TTL = os.getenv("DNS_RECORD_TTL", str(DEFAULT_TTL))
NODE_IP = os.getenv("NODE_IP", "").strip()

# Masters configuration
DNS_CONFIG_PATH = os.getenv("DNS_CONFIG_PATH", "/config/dns.yaml")
MESOS_RESOLVERS = os.getenv("MESOS_RESOLVERS", "")

# Runtime configuration
MASTERS_POLL_INTERVAL_MS = os.getenv("MASTERS_POLL_INTERVAL_MS", "5000")
PUSH_OPS_INTERVAL_MS = os.getenv("PUSH_OPS_INTERVAL_MS", "1000")
SUBSCRIBE_RETRY_MS = os.getenv("SUBSCRIBE_RETRY_MS", "100")
REQUEST_TIMEOUT_SECONDS = os.getenv("REQUEST_TIMEOUT_SECONDS", "5")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DOMAIN_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*$")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_positive_int(name: str, value: str) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'") from None
    if parsed <= 0:
        raise ValueError(f"{name} must be positive, got {parsed}")
    return parsed


def _parse_resolver(entry: Any) -> str:
    """Return the address part of an "ip", "ip:port" or "[ipv6]:port" entry."""
    item = str(entry).strip()
    if item.startswith("["):
        host, sep, _ = item[1:].partition("]")
        if not sep:
            raise ValueError(f"Invalid resolver '{item}'")
    elif item.count(":") == 1:
        host = item.split(":", 1)[0]
    else:
        host = item
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        raise ValueError(f"Invalid resolver '{item}': not an IP address") from None


def _parse_resolvers(value: str) -> List[str]:
    """Parse a comma-separated resolver list."""
    resolvers: List[str] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        resolver = _parse_resolver(item)
        if resolver not in resolvers:
            resolvers.append(resolver)
    return resolvers


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    # Path doesn't exist yet
    return []


def load_mesos_resolvers(config_path: str, fallback: str = "") -> List[str]:
    """Load the Mesos master addresses.

    The ``mesos_resolvers`` lists of all config files are merged in file order.
    If no file defines the key, the comma-separated ``fallback`` is used.

    Raises:
        ValueError: a config file is unreadable or holds an invalid entry
    """
    found = False
    resolvers: List[str] = []
    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to load config from {config_file}: {e}") from e

        if not isinstance(config_data, dict) or "mesos_resolvers" not in config_data:
            logger.debug(f"Config file {config_file} has no 'mesos_resolvers' key")
            continue
        entries = config_data["mesos_resolvers"] or []
        if not isinstance(entries, list):
            raise ValueError(f"'mesos_resolvers' in {config_file} must be a list")

        found = True
        for entry in entries:
            resolver = _parse_resolver(entry)
            if resolver not in resolvers:
                resolvers.append(resolver)

    if not found:
        return _parse_resolvers(fallback)
    return resolvers


# =============================================================================
# Provider Registry
# =============================================================================


def create_event_source() -> MesosOperatorEventSource:
    """Factory function to create the Mesos event source."""
    return MesosOperatorEventSource(
        url=MESOS_URL,
        username=MESOS_USERNAME,
        password=MESOS_PASSWORD,
        timeout=float(REQUEST_TIMEOUT_SECONDS),
        verify_tls=_parse_bool(MESOS_VERIFY_TLS, default=True),
    )


def create_store() -> ReplicatedStore:
    """Factory function to create the configured replicated store."""
    if STORE_PROVIDER == "http":
        return HTTPReplicatedStore(
            url=STORE_URL,
            username=STORE_USERNAME,
            password=STORE_PASSWORD,
            timeout=float(REQUEST_TIMEOUT_SECONDS),
            verify_tls=_parse_bool(STORE_VERIFY_TLS, default=True),
        )
    elif STORE_PROVIDER == "file":
        return FileReplicatedStore(STORE_PATH)
    else:
        raise ValueError(
            f"Unsupported store provider: '{STORE_PROVIDER}'. Supported providers: http, file"
        )


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if STORE_PROVIDER == "http":
        if not STORE_URL:
            errors.append("STORE_URL is required when STORE_PROVIDER=http")
    elif STORE_PROVIDER == "file":
        if not STORE_PATH:
            errors.append("STORE_PATH is required when STORE_PROVIDER=file")
    else:
        errors.append(f"Unsupported STORE_PROVIDER: {STORE_PROVIDER}. Supported: http, file")

    if not MESOS_URL:
        errors.append("MESOS_URL is required")

    if not NODE_IP:
        errors.append("NODE_IP is required")
    else:
        try:
            ipaddress.ip_address(NODE_IP)
        except ValueError:
            errors.append(f"NODE_IP is not a valid IP address: '{NODE_IP}'")

    if not DOMAIN_RE.match(DNS_DOMAIN):
        errors.append(f"DNS_DOMAIN is not a valid domain: '{DNS_DOMAIN}'")

    for name, value in (
        ("DNS_RECORD_TTL", DNS_RECORD_TTL),
        ("MASTERS_POLL_INTERVAL_MS", MASTERS_POLL_INTERVAL_MS),
        ("PUSH_OPS_INTERVAL_MS", PUSH_OPS_INTERVAL_MS),
        ("SUBSCRIBE_RETRY_MS", SUBSCRIBE_RETRY_MS),
        ("REQUEST_TIMEOUT_SECONDS", REQUEST_TIMEOUT_SECONDS),
    ):
        try:
            _parse_positive_int(name, value)
        except ValueError as e:
            errors.append(str(e))

    try:
        resolvers = load_mesos_resolvers(DNS_CONFIG_PATH, MESOS_RESOLVERS)
        if not resolvers:
            logger.warning("No Mesos resolvers configured; master.<domain> will be empty")
    except ValueError as e:
        errors.append(str(e))

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def create_syncer(
    event_source: Optional[MesosOperatorEventSource] = None,
    store: Optional[ReplicatedStore] = None,
) -> MesosDNSSyncer:
    return MesosDNSSyncer(
        event_source=event_source or create_event_source(),
        store=store or create_store(),
        resolvers=lambda: load_mesos_resolvers(DNS_CONFIG_PATH, MESOS_RESOLVERS),
        node_ip=NODE_IP,
        domain=DNS_DOMAIN,
        ttl=_parse_positive_int("DNS_RECORD_TTL", DNS_RECORD_TTL),
        masters_interval=_parse_positive_int("MASTERS_POLL_INTERVAL_MS", MASTERS_POLL_INTERVAL_MS)
        / 1000.0,
        push_interval=_parse_positive_int("PUSH_OPS_INTERVAL_MS", PUSH_OPS_INTERVAL_MS) / 1000.0,
        retry_delay=_parse_positive_int("SUBSCRIBE_RETRY_MS", SUBSCRIBE_RETRY_MS) / 1000.0,
    )


def main():
    """Main entry point."""
    logger.info(f"mesos-dns-sync: {MESOS_URL} -> {STORE_PROVIDER} store")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    event_source = create_event_source()
    store = create_store()

    logger.info(f"Event source: {event_source.name}")
    logger.info(f"Store: {store.name}")
    logger.info(f"Zone: {DNS_DOMAIN} (leader {NODE_IP})")
    logger.info(
        f"Masters poll interval: {MASTERS_POLL_INTERVAL_MS}ms, "
        f"push interval: {PUSH_OPS_INTERVAL_MS}ms"
    )

    if isinstance(store, HTTPReplicatedStore) and not store.test_connection():
        logger.error(f"Cannot connect to {store.name}. Exiting.")
        sys.exit(1)

    syncer = create_syncer(event_source, store)

    try:
        syncer.run()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        event_source.close()
    except SyncTerminated as e:
        logger.error(f"Exiting for restart: {e}")
        sys.exit(1)
    except StoreError as e:
        logger.error(f"Replicated store failure: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
