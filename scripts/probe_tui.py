#!/usr/bin/env python3
"""
Probe TUI - Terminal UI for watching how the cluster reacts to kube-lab probes.

Watches the pods selected by a label selector and shows, per pod, the
Kubernetes view (phase, Ready / ContainersReady conditions, restarts) next
to the service's own view (healthz / readyz / livez countdowns read from
/info through the API server pod proxy).
"""

import argparse
import json
import queue
import sys
import threading
import time
from typing import Any, Dict, List, Optional

import kubernetes
from kubernetes import watch
from kubernetes.client import CoreV1Api, V1Pod
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

PROBES = ["healthz", "readyz", "livez"]
INFO_PATH = "info"


def condition_status(pod: V1Pod, condition_type: str) -> Optional[bool]:
    """Return the status of a pod condition, or None if it is not reported."""
    conditions: List = (pod.status.conditions if pod.status else None) or []
    for c in conditions:
        if c.type == condition_type:
            return c.status == "True"
    return None


def is_pod_ready(pod: V1Pod) -> bool:
    """Check if a pod is Ready."""
    return condition_status(pod, "Ready") is True


def restart_count(pod: V1Pod) -> int:
    """Sum of container restarts."""
    statuses: List = (pod.status.container_statuses if pod.status else None) or []
    return sum(s.restart_count or 0 for s in statuses)


def pod_name(pod: V1Pod) -> str:
    return pod.metadata.name if pod.metadata else "unknown"


def format_remaining(seconds: Optional[int]) -> str:
    """Format a countdown in seconds."""
    if seconds is None:
        return "N/A"
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m {seconds % 60}s"


def probe_cell(probe: Optional[Dict[str, Any]]) -> Text:
    """Render one probe status as reported by /info."""
    if not probe:
        return Text("❓", style="dim")
    if probe.get("ok"):
        return Text("✅ ok", style="bold green")
    remaining = format_remaining(probe.get("remainingSeconds"))
    return Text(f"⏳ {remaining}", style="yellow")


def fetch_info(core: CoreV1Api, pod: V1Pod, port: int) -> Optional[Dict[str, Any]]:
    """Read /info from a pod through the API server proxy."""
    if not pod.metadata or not pod.status or pod.status.phase != "Running":
        return None
    try:
        resp = core.connect_get_namespaced_pod_proxy_with_path(
            name=f"{pod.metadata.name}:{port}",
            namespace=pod.metadata.namespace,
            path=INFO_PATH,
            _preload_content=False,
        )
        return json.loads(resp.data)
    except kubernetes.client.exceptions.ApiException:
        return None
    except ValueError:
        return None


def summarize(pods: List[V1Pod]) -> Dict[str, int]:
    """Counts for the dashboard header."""
    active = [p for p in pods if not (p.metadata and p.metadata.deletion_timestamp)]
    ready = sum(1 for p in active if is_pod_ready(p))
    return {
        "total": len(active),
        "ready": ready,
        "not_ready": len(active) - ready,
        "restarts": sum(restart_count(p) for p in active),
        "terminating": len(pods) - len(active),
    }


def _bool_cell(value: Optional[bool]) -> Text:
    if value is None:
        return Text("-", style="dim")
    return Text("True", style="green") if value else Text("False", style="red")


def render_dashboard(
    namespace: str,
    selector: str,
    pods: List[V1Pod],
    infos: Dict[str, Optional[Dict[str, Any]]],
) -> Panel:
    """Render the probe dashboard."""
    counts = summarize(pods)

    header = Table.grid(padding=(0, 2))
    header.add_column(style="bold cyan")
    header.add_column()
    header.add_row("Namespace:", namespace)
    header.add_row("Selector:", selector)
    ready_style = "bold green" if counts["total"] and counts["not_ready"] == 0 else "bold yellow"
    header.add_row("Ready:", Text(f"{counts['ready']}/{counts['total']}", style=ready_style))
    header.add_row("Restarts:", str(counts["restarts"]))
    if counts["terminating"]:
        header.add_row("Terminating:", str(counts["terminating"]))

    table = Table(box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Pod", style="bold")
    table.add_column("Phase")
    table.add_column("Ready")
    table.add_column("Containers")
    table.add_column("Restarts", justify="right")
    for probe in PROBES:
        table.add_column(f"/{probe}")

    for pod in sorted(pods, key=pod_name):
        name = pod_name(pod)
        info = infos.get(name) or {}
        probes = info.get("probes") or {}
        table.add_row(
            name,
            (pod.status.phase if pod.status else None) or "Unknown",
            _bool_cell(condition_status(pod, "Ready")),
            _bool_cell(condition_status(pod, "ContainersReady")),
            str(restart_count(pod)),
            *[probe_cell(probes.get(probe)) for probe in PROBES],
        )

    legend = Text()
    legend.append("Legend: ", style="bold")
    legend.append("✅ Probe ok  ")
    legend.append("⏳ Probe pending (time left)  ")
    legend.append("❓ /info unreachable")

    return Panel(Group(header, Text(""), table, legend), title="kube-lab probes", border_style="blue")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Watch kube-lab pods and their probe countdowns")
    parser.add_argument("--namespace", required=True, help="Namespace of the pods")
    parser.add_argument("--selector", default="app=kube-lab", help="Label selector for the pods")
    parser.add_argument("--port", type=int, default=8080, help="Container port serving /info")
    args = parser.parse_args()

    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        try:
            kubernetes.config.load_kube_config()
        except Exception as e:
            print(f"Failed to load Kubernetes config: {e}", file=sys.stderr)
            sys.exit(1)

    core_api = CoreV1Api()

    def get_pods() -> List[V1Pod]:
        return core_api.list_namespaced_pod(
            namespace=args.namespace,
            label_selector=args.selector,
        ).items

    def refresh(live: Live) -> None:
        pods = get_pods()
        infos = {pod_name(p): fetch_info(core_api, p, args.port) for p in pods}
        live.update(render_dashboard(args.namespace, args.selector, pods, infos))

    def watch_updates(live: Live) -> None:
        w = watch.Watch()
        events: queue.Queue = queue.Queue()

        def stream_worker():
            try:
                for event in w.stream(
                    core_api.list_namespaced_pod,
                    namespace=args.namespace,
                    label_selector=args.selector,
                ):
                    events.put(("pod", event))
            except Exception as e:
                events.put(("error", e))

        try:
            refresh(live)
            threading.Thread(target=stream_worker, daemon=True).start()
            while True:
                try:
                    kind, event = events.get(timeout=1.0)
                    if kind == "error":
                        raise event
                except queue.Empty:
                    # Countdowns move every second even without pod events.
                    pass
                refresh(live)
        except Exception as e:
            live.update(Panel(f"[red]Error: {e}[/red]", title="Error"))
            time.sleep(5)
        finally:
            w.stop()

    console = Console()
    try:
        with Live(console=console, refresh_per_second=4, screen=True) as live:
            while True:
                watch_updates(live)
    except KeyboardInterrupt:
        console.print("\n[yellow]Exiting...[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
