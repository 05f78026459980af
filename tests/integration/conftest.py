"""Integration test fixtures using pytest-kubernetes for cluster management."""
import os
import subprocess
import time
import pytest
from pathlib import Path
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pytest_kubernetes.providers import AClusterManager


KUBE_LAB_IMAGE = "kube-lab:test"
NAMESPACE = "kube-lab"


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Expose test outcome on the test item so fixtures can react in teardown.

    Pattern:
      if request.node.rep_call.failed: ...
    """
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def _debug_dump(k8s: AClusterManager, namespace: str = NAMESPACE) -> None:
    """Best-effort debug dump of kube-lab pods (events + logs). Never raises."""

    def safe_kubectl(args: list[str]) -> str:
        try:
            return k8s.kubectl(args, as_dict=False)
        except Exception as e:  # noqa: BLE001 - best-effort debug helper
            return f"[debug-dump] failed: kubectl {' '.join(args)}: {e}"

    print("\n==================== DEBUG DUMP (kube-lab) ====================")
    print(safe_kubectl(["get", "deploy", "-n", namespace, "-o", "wide"]))
    print(safe_kubectl(["get", "pods", "-n", namespace, "-o", "wide"]))
    print("\n--- events (newest last) ---")
    print(safe_kubectl(["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"]))

    pods = safe_kubectl(["get", "pods", "-n", namespace, "-o", "name"])
    pod_names = [line.strip() for line in pods.splitlines() if line.strip().startswith("pod/")]
    for pod in pod_names[:2]:
        print(f"\n--- logs: {pod} (tail 200) ---")
        print(safe_kubectl(["logs", pod, "-n", namespace, "--tail=200"]))


def _build_image(image_name: str, dockerfile_path: Path, context_path: Path) -> None:
    """Build Docker image using subprocess to avoid credential store issues."""
    result = subprocess.run(
        ["docker", "images", "-q", image_name],
        capture_output=True, text=True
    )
    if result.stdout.strip():
        return  # Image already exists

    subprocess.run(
        ["docker", "build", "-t", image_name, "-f", str(dockerfile_path), str(context_path)],
        check=True
    )


def _kube_lab_deployment(
    name: str,
    min_delay: int,
    max_delay: int,
    liveness_probe: client.V1Probe = None,
) -> client.V1Deployment:
    """A single-replica kube-lab Deployment with the readiness probe on /readyz."""
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": name}),
                spec=client.V1PodSpec(
                    termination_grace_period_seconds=1,
                    containers=[
                        client.V1Container(
                            name="app",
                            image=KUBE_LAB_IMAGE,
                            image_pull_policy="Never",
                            env=[
                                client.V1EnvVar(name="PORT", value="8080"),
                                client.V1EnvVar(name="KL_MIN_DELAY_SECONDS", value=str(min_delay)),
                                client.V1EnvVar(name="KL_MAX_DELAY_SECONDS", value=str(max_delay)),
                                client.V1EnvVar(
                                    name="POD_NAME",
                                    value_from=client.V1EnvVarSource(
                                        field_ref=client.V1ObjectFieldSelector(field_path="metadata.name")
                                    ),
                                ),
                            ],
                            ports=[client.V1ContainerPort(name="http", container_port=8080)],
                            readiness_probe=client.V1Probe(
                                http_get=client.V1HTTPGetAction(path="/readyz", port="http"),
                                period_seconds=2,
                                failure_threshold=1,
                            ),
                            liveness_probe=liveness_probe,
                        )
                    ],
                ),
            ),
        ),
    )


@pytest.fixture
def cluster(k8s: AClusterManager, request):
    """
    Prepare a cluster managed by pytest-kubernetes with the kube-lab image loaded.

    pytest-kubernetes picks the first available provider (k3d, kind, minikube);
    override with --k8s-provider=<name>.
    """
    project_root = Path(__file__).parent.parent.parent
    always = os.environ.get("KL_TEST_DEBUG") == "1"

    try:
        if not k8s.ready(timeout=5):
            print(f"[cluster] Creating cluster '{k8s.cluster_name}'...")
            k8s.create()
        else:
            print(f"[cluster] Cluster '{k8s.cluster_name}' already exists and is ready")

        _build_image(KUBE_LAB_IMAGE, project_root / "Dockerfile", project_root)
        k8s.load_image(KUBE_LAB_IMAGE)

        os.environ["KUBECONFIG"] = str(k8s.kubeconfig)
        config.load_kube_config(config_file=str(k8s.kubeconfig))
        core_v1 = client.CoreV1Api()
        apps_v1 = client.AppsV1Api()

        try:
            core_v1.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=NAMESPACE)))
        except ApiException as e:
            if e.status != 409:  # Already exists
                raise

        k8s.core_v1 = core_v1
        k8s.apps_v1 = apps_v1
        k8s.namespace = NAMESPACE

        yield k8s

    except Exception:
        if always:
            _debug_dump(k8s)
        raise

    finally:
        rep_call = getattr(request.node, "rep_call", None)
        failed = bool(rep_call and rep_call.failed)
        if always or failed:
            _debug_dump(k8s)


@pytest.fixture
def lab_deployment():
    """Factory for kube-lab Deployments."""
    return _kube_lab_deployment


@pytest.fixture
def deploy(cluster: AClusterManager):
    """Create kube-lab Deployments and delete them after the test."""
    created = []

    def _deploy(deployment: client.V1Deployment) -> str:
        name = deployment.metadata.name
        try:
            cluster.apps_v1.create_namespaced_deployment(namespace=NAMESPACE, body=deployment)
        except ApiException as e:
            if e.status != 409:
                raise
        created.append(name)
        return name

    yield _deploy

    for name in created:
        try:
            cluster.apps_v1.delete_namespaced_deployment(name, NAMESPACE, propagation_policy="Background")
        except ApiException:
            pass


@pytest.fixture
def wait_for_pod(cluster: AClusterManager):
    """Wait until a pod for the app label exists and its container is running."""
    def _wait(app: str, timeout: int = 180):
        deadline = time.time() + timeout
        while time.time() < deadline:
            pods = cluster.core_v1.list_namespaced_pod(NAMESPACE, label_selector=f"app={app}").items
            for pod in pods:
                statuses = (pod.status.container_statuses if pod.status else None) or []
                if any(s.state and s.state.running for s in statuses):
                    return pod
            time.sleep(1)
        raise TimeoutError(f"No running pod for app={app} within {timeout}s")
    return _wait
