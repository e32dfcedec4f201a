"""Runtime configuration for the Disk Swap add-on.

Paths and ports can be overridden through environment variables so the
service can run outside the add-on container (tests, local development).
"""

import logging
import os
from pathlib import Path

# Filesystem layout
DATA_DIR = Path(os.environ.get("DISKSWAP_DATA_DIR", "/data"))
BACKUP_DIR = Path(os.environ.get("DISKSWAP_BACKUP_DIR", "/backup"))
IMAGE_DIR = DATA_DIR
JOB_STATE_FILE = DATA_DIR / "clone-job.json"
LOG_FILE = DATA_DIR / "logs" / "disk-swap.log"
LOG_LEVEL = getattr(logging, os.environ.get("DISKSWAP_LOG_LEVEL", "INFO").upper(), logging.INFO)

# HTTP
INGRESS_PORT = int(os.environ.get("INGRESS_PORT", "8099"))
SANDBOX_PROXY_PORT = int(os.environ.get("SANDBOX_PROXY_PORT", "8124"))
SUPERVISOR_URL = os.environ.get("SUPERVISOR_URL", "http://supervisor")
STATIC_DIR = Path(os.environ.get("DISKSWAP_STATIC_DIR", "/app/public"))

# OS image releases
RELEASES_BASE_URL = "https://github.com/home-assistant/operating-system/releases/download"
MIN_DOWNLOAD_SPACE = 600 * 1024 * 1024  # 600 MiB

# Target disk
DATA_PARTITION_LABEL = "hassos-data"
BOOT_PARTITION_LABEL = "hassos-boot"
MOUNT_POINT = Path("/mnt/newsd")
LOOP_DEVICE = "/dev/loop0"
MIN_TARGET_SIZE = 8 * 1024**3
MAX_TARGET_SIZE = 2 * 1024**4

# Backup injection, relative to the data partition root
SUPERVISOR_BACKUP_SUBDIR = "supervisor/backup"
CORE_CONFIG_SUBDIR = "supervisor/homeassistant"
CORE_BACKUP_SUBDIR = "supervisor/homeassistant/backups"
RESTORE_DESCRIPTOR_NAME = ".HA_RESTORE"
CORE_BACKUP_PATH_IN_RUNTIME = "/config/backups"

# Sandbox (nested Docker) runtime
DIND_SOCKET = "/run/dind.sock"
DIND_CONFIG_FILE = Path("/tmp/dind-daemon.json")
DIND_LOG_FILE = Path("/tmp/dind.log")
DIND_EXEC_ROOT = "/tmp/dind-exec"
DIND_PIDFILE = "/tmp/dind.pid"
DIND_BRIDGE_IP = "10.99.99.1/24"
DIND_BRIDGE_SUBNET = "10.99.99.0/24"
SANDBOX_NETWORK = "hassio"
SANDBOX_SUBNET = "172.30.32.0/23"
SANDBOX_INNER_SUBNET = "172.30.32.0/24"
SANDBOX_GATEWAY = "172.30.33.254"
SANDBOX_SUPERVISOR_IP = "172.30.32.2"
SANDBOX_OUTER_GATEWAY = "172.30.32.1"
SANDBOX_CORE_URL = "http://127.0.0.1:8123"
SANDBOX_FWMARK = "0x1"
SANDBOX_ROUTE_TABLE = "100"
SANDBOX_READY_SENTINEL = "sandbox_ready"
SUPERVISOR_CONTAINER = "hassio_supervisor"
