"""
kube_lab.py

Minimal HTTP service for exercising orchestrator probe handling.

Features:
- /healthz, /readyz, /livez report 200 once their randomized startup delay
  has elapsed and 503 before that (see probe_manager.py).
- /info returns a diagnostic JSON document (app, probes, Kubernetes
  downward-API style environment, container network).
- Everything else is served as static files from the public directory.

Env vars (prefixed with KL_ unless noted):
- KL_PORT or PORT                   (default: 8080)
- KL_HOST                           (default: 0.0.0.0)
- KL_PUBLIC_DIR                     (default: public)
- KL_MIN_DELAY_SECONDS              (default: 15)
- KL_MAX_DELAY_SECONDS              (default: 60)
- KL_APP_NAME                       (default: kube-lab-image)
- KL_APP_VERSION or APP_VERSION     (default: dev)
- KL_JSON_LOGS                      (default: false)
- KL_LOG_LEVEL                      (default: INFO)
"""

import errno
import functools
import ipaddress
import json
import logging
import os
import platform
import socket
import sys
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import psutil
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from probe_manager import ProbeManager, ProbeName, ProbeStatus


logger = logging.getLogger(__name__)


# =========================
# Settings
# =========================

class KubeLabSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KL_", populate_by_name=True)

    port: int = Field(8080, validation_alias=AliasChoices("KL_PORT", "PORT", "port"))
    host: str = "0.0.0.0"
    public_dir: Path = Path("public")
    # Bounds are normalized by the probe manager, never rejected here.
    min_delay_seconds: float = 15
    max_delay_seconds: float = 60
    app_name: str = "kube-lab-image"
    app_version: str = Field(
        "dev", validation_alias=AliasChoices("KL_APP_VERSION", "APP_VERSION", "app_version")
    )
    namespace_path: Path = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")
    json_logs: bool = False
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def must_be_known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {v!r}")
        return level


# =========================
# Constants
# =========================

NAMESPACE_ENV_KEYS = [
    "HOSTNAME",
    "POD_NAME",
    "POD_NAMESPACE",
    "NODE_NAME",
    "SERVICE_NAME",
    "CLUSTER_NAME",
    "KUBERNETES_SERVICE_HOST",
    "KUBERNETES_PORT_443_TCP_ADDR",
    "KUBERNETES_PORT",
]

PROBE_PATHS = {f"/{probe.value}": probe for probe in ProbeName}
INFO_PATH = "/info"


# =========================
# Logging
# =========================

class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(level)


# =========================
# Environment introspection
# =========================

def read_namespace(path: Path) -> Optional[str]:
    """Read the pod namespace from the mounted service account, if any."""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return None


def collect_environment(environ: Mapping[str, str]) -> Dict[str, str]:
    """Pick the Kubernetes-related env vars that are set and non-empty."""
    return {key: environ[key] for key in NAMESPACE_ENV_KEYS if environ.get(key)}


def get_network_addresses() -> List[Dict[str, Any]]:
    """
    Non-internal IPv4 addresses grouped by interface, in the form
    {"interfaceName": str, "addresses": [str, ...]}.
    """
    result: List[Dict[str, Any]] = []
    for name, infos in psutil.net_if_addrs().items():
        addresses = [
            i.address
            for i in infos
            if i.family == socket.AF_INET and not ipaddress.ip_address(i.address).is_loopback
        ]
        if addresses:
            result.append({"interfaceName": name, "addresses": addresses})
    return result


def _iso_utc(manager: ProbeManager) -> str:
    return manager.started_at.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_info(
    manager: ProbeManager,
    settings: KubeLabSettings,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Assemble the /info payload."""
    env = os.environ if environ is None else environ
    namespace = read_namespace(settings.namespace_path)
    collected = collect_environment(env)

    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "python": platform.python_version(),
            "implementation": platform.python_implementation(),
            "startedAt": _iso_utc(manager),
            "port": settings.port,
        },
        "probes": {name: status.to_json_dict() for name, status in manager.statuses().items()},
        "kubernetes": {
            "namespace": namespace or collected.get("POD_NAMESPACE"),
            "podName": collected.get("POD_NAME") or env.get("HOSTNAME") or None,
            "nodeName": collected.get("NODE_NAME"),
            "serviceName": collected.get("SERVICE_NAME"),
            "clusterName": collected.get("CLUSTER_NAME"),
            "api": {
                "host": collected.get("KUBERNETES_SERVICE_HOST"),
                "port": collected.get("KUBERNETES_PORT")
                or collected.get("KUBERNETES_PORT_443_TCP_ADDR"),
            },
        },
        "container": {
            "network": get_network_addresses(),
            "pid": os.getpid(),
            "platform": sys.platform,
            "arch": platform.machine(),
            "envKeys": len(env),
        },
    }


# =========================
# HTTP layer
# =========================

def probe_response(status: ProbeStatus) -> Tuple[HTTPStatus, Dict[str, Any]]:
    """Map a probe status to an HTTP status code and JSON body."""
    code = HTTPStatus.OK if status.ok else HTTPStatus.SERVICE_UNAVAILABLE
    body = {"status": "ok" if status.ok else "unavailable", **status.to_json_dict()}
    return code, body


class KubeLabRequestHandler(SimpleHTTPRequestHandler):
    """Serves probes and /info, falls back to static files."""

    server_version = "kube-lab"

    def __init__(self, *args, manager: ProbeManager, settings: KubeLabSettings, **kwargs):
        # BaseRequestHandler handles the request inside __init__.
        self.manager = manager
        self.settings = settings
        super().__init__(*args, directory=str(settings.public_dir), **kwargs)

    def _route(self) -> Optional[Tuple[HTTPStatus, Dict[str, Any]]]:
        path = urlsplit(self.path).path
        probe = PROBE_PATHS.get(path)
        if probe is not None:
            return probe_response(self.manager.get_status(probe))
        if path == INFO_PATH:
            return HTTPStatus.OK, build_info(self.manager, self.settings)
        return None

    def _write_json(self, code: HTTPStatus, body: Dict[str, Any], include_body: bool = True):
        data = json.dumps(body).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        if include_body:
            self.wfile.write(data)

    def do_GET(self):
        routed = self._route()
        if routed is None:
            super().do_GET()
            return
        self._write_json(*routed)

    def do_HEAD(self):
        routed = self._route()
        if routed is None:
            super().do_HEAD()
            return
        self._write_json(*routed, include_body=False)

    def log_request(self, code="-", size="-"):
        path = urlsplit(self.path).path
        # A not-yet-ready probe is the expected state during startup.
        if path in PROBE_PATHS and code == HTTPStatus.SERVICE_UNAVAILABLE:
            logger.debug('"%s" %s', self.requestline, int(code))
            return
        super().log_request(code, size)

    def log_message(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)

    def log_error(self, format, *args):
        logger.warning("%s - %s", self.address_string(), format % args)


def create_server(settings: KubeLabSettings, manager: ProbeManager) -> ThreadingHTTPServer:
    """Bind the HTTP server; the manager is injected into every handler."""
    handler = functools.partial(KubeLabRequestHandler, manager=manager, settings=settings)
    server = ThreadingHTTPServer((settings.host, settings.port), handler)
    server.daemon_threads = True
    return server


def main() -> int:
    settings = KubeLabSettings()
    configure_logging(settings.log_level, settings.json_logs)

    manager = ProbeManager(settings.min_delay_seconds, settings.max_delay_seconds)
    for probe, delay in manager.delays.items():
        logger.info(f"Probe /{probe.value} becomes ready after {delay}s.")

    try:
        server = create_server(settings, manager)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            logger.error(f"Port {settings.port} is in use. Set PORT or free it.")
        else:
            logger.error(f"Failed to start server: {exc}")
        return 1

    host, port = server.server_address[:2]
    logger.info(f"Server listening on http://localhost:{port} (bound to {host}).")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
