#!/bin/python3
"""
ArgoCD Setup - A script to bootstrap ArgoCD locally in a minikube cluster

This script checks the required tools, makes sure minikube runs a recent
enough Kubernetes version, installs ArgoCD with Helm, syncs the example
applications and exposes them through kubectl port-forwards.
"""

import argparse
import base64
import re
import subprocess
import sys
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml

from version_gate import (
    GateResult,
    InvalidVersionFormat,
    UnrecognizedOperator,
    evaluate,
)


class Colors(Enum):
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    BOLD = "\033[1m"
    RESET = "\033[0m"


class ArgocdSetupError(Exception):
    """Base exception for argocd-setup script errors."""

    pass


REQUIRED_TOOLS = ("minikube", "kubectl", "helm")

CONFIG_FILE = Path("argocd-setup.yaml")


@dataclass
class PortForward:
    """A kubectl port-forward to a cluster service."""

    namespace: str
    service: str
    local_port: int
    remote_port: int
    label: str = ""
    scheme: str = "http"

    @property
    def url(self) -> str:
        return f"{self.scheme}://localhost:{self.local_port}"

    def command(self) -> list:
        return [
            "kubectl",
            "port-forward",
            f"service/{self.service}",
            "-n",
            self.namespace,
            f"{self.local_port}:{self.remote_port}",
        ]


def _default_port_forwards() -> list:
    # The last forward runs in the foreground and is shown with the credentials
    return [
        PortForward("develop", "static", 8083, 80, "Static app from develop namespace"),
        PortForward(
            "test", "hello-kubernetes", 8082, 80, "Hello-kubernetes app from test namespace"
        ),
        PortForward("develop", "guestbook", 8081, 80, "guestbook app from develop namespace"),
        PortForward("argocd", "argocd-server", 8443, 443, "ArgoCD", scheme="https"),
    ]


@dataclass
class SetupConfig:
    """Settings for a bootstrap run."""

    namespace: str = "argocd"
    values_file: Path = Path("../infra/values/argocd.yaml")
    helm_repo_name: str = "argo"
    helm_repo_url: str = "https://argoproj.github.io/argo-helm"
    release_name: str = "argocd"
    chart: str = "argo/argo-cd"
    chart_version: str = "3.33.6"
    min_k8s_version: str = "1.23"
    k8s_version_operator: str = "<"
    fallback_k8s_version: str = "1.23.3"
    retry_delay: int = 10
    root_app: str = "apps"
    health_apps: list = field(
        default_factory=lambda: [
            "static-develop",
            "hello-kubernetes-test",
            "guestbook-develop",
        ]
    )
    infra_app: Optional[str] = "infra"
    port_forwards: list = field(default_factory=_default_port_forwards)

    @classmethod
    def from_dict(cls, data: dict) -> "SetupConfig":
        """Build a config from a parsed config file, keeping defaults for missing keys."""
        if not isinstance(data, dict):
            raise ArgocdSetupError("Config file must contain a mapping of settings")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ArgocdSetupError(f"Unknown config keys: {', '.join(unknown)}")

        values = dict(data)
        if "values_file" in values:
            values_file = values["values_file"]
            if not isinstance(values_file, str) or not values_file:
                raise ArgocdSetupError(f"Invalid values_file: {values_file!r}")
            values["values_file"] = Path(values_file)
        # YAML reads unquoted 1.23 as a float
        for key in ("chart_version", "min_k8s_version", "fallback_k8s_version"):
            if key in values:
                values[key] = str(values[key])
        if "port_forwards" in values:
            try:
                values["port_forwards"] = [
                    PortForward(**forward) for forward in values["port_forwards"]
                ]
            except TypeError as e:
                raise ArgocdSetupError(f"Invalid port_forwards entry: {e}") from e

        return cls(**values)


def load_config(config_path: Path) -> dict:
    """Load settings from a YAML file."""
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except (yaml.YAMLError, UnicodeDecodeError):
            print(f"Warning: Config file {config_path} is corrupted. Using defaults.")
            return {}
    return {}


def run_command(
    command, check=True, print_output=False, quiet=False
) -> subprocess.CompletedProcess:
    """Run a command and return the output."""
    print(f"Running: {' '.join(command)}")

    result = subprocess.run(
        command, check=check, text=True, capture_output=True
    )

    if result.stdout and print_output:
        print(result.stdout)
    if result.stderr and not quiet:
        print(result.stderr, file=sys.stderr)

    return result


def check_values_file(values_file: Path):
    """Make sure the Helm values file for ArgoCD exists and is valid YAML."""
    if not values_file.is_file():
        raise ArgocdSetupError(
            f"Helm values file {values_file} not found. Run the script from the "
            "helpers directory or pass --values. Aborting."
        )

    try:
        with open(values_file, "r", encoding="utf-8") as f:
            values = yaml.safe_load(f)
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise ArgocdSetupError(f"Helm values file {values_file} is not valid YAML") from e

    if values is not None and not isinstance(values, dict):
        raise ArgocdSetupError(f"Helm values file {values_file} must contain a mapping")


def check_dependencies(dependencies=REQUIRED_TOOLS):
    """Check if required dependencies are installed."""
    for dep in dependencies:
        try:
            run_command(["which", dep], quiet=True)
        except subprocess.CalledProcessError:
            raise ArgocdSetupError(
                f"{dep} is required, but it's not installed. Aborting."
            ) from None

    print("All dependencies are installed.")


def start_minikube(kubernetes_version=None):
    """Start minikube, optionally pinning the Kubernetes version."""
    command = ["minikube", "start"]
    if kubernetes_version:
        command.append(f"--kubernetes-version=v{kubernetes_version.lstrip('v')}")

    try:
        run_command(command, print_output=True)
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(f"Failed to start minikube: {e.stderr}") from e


def stop_minikube():
    """Stop the minikube cluster."""
    try:
        run_command(["minikube", "stop"], print_output=True)
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(f"Failed to stop minikube: {e.stderr}") from e


def ensure_minikube_running():
    """Create the minikube cluster if needed and start it when stopped."""
    if run_command(["minikube", "profile", "list"], check=False).returncode != 0:
        print("No minikube profile found, creating the cluster.")
        start_minikube()

    # minikube status exits non-zero when the host is stopped
    status = run_command(["minikube", "status", "--format={{.Host}}"], check=False)
    if status.stdout.strip() == "Stopped":
        print("Minikube is stopped. Starting minikube!")
        start_minikube()
    else:
        print("Minikube is already running!")


def extract_kubernetes_version(git_version: str) -> str:
    """Turn a server gitVersion like 'v1.23.3+k3s1' into '1.23.3'."""
    version = git_version.strip()
    if version.startswith("v"):
        version = version[1:]
    return re.split(r"[-+]", version, maxsplit=1)[0]


def get_server_version() -> str:
    """Get the Kubernetes server version of the current context."""
    try:
        result = run_command(["kubectl", "version", "-o", "yaml"])
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(f"Could not reach the Kubernetes API server: {e.stderr}") from e

    try:
        version_info = yaml.safe_load(result.stdout) or {}
    except yaml.YAMLError as e:
        raise ArgocdSetupError("Could not parse 'kubectl version' output") from e

    server_version = version_info.get("serverVersion") if isinstance(version_info, dict) else None
    git_version = (server_version or {}).get("gitVersion")
    if not git_version:
        raise ArgocdSetupError("Kubernetes server version not reported by kubectl")

    return extract_kubernetes_version(git_version)


def format_gate_report(a: str, b: str, expected: str, result: GateResult) -> str:
    actual = result.actual.value
    if result.passed:
        return f"Kubernetes test pass: '{a} {actual} {b}'"
    return (
        f"Kubernetes test fail: Expected '{expected}', Actual '{actual}', "
        f"Arg1 '{a}', Arg2 '{b}'"
    )


def check_k8s_version(config: SetupConfig) -> GateResult:
    """Restart minikube at the fallback version when the server is too old."""
    current = get_server_version()

    try:
        result = evaluate(config.min_k8s_version, current, config.k8s_version_operator)
    except (InvalidVersionFormat, UnrecognizedOperator) as e:
        raise ArgocdSetupError(f"Cannot check Kubernetes version: {e}") from e

    print(
        format_gate_report(
            config.min_k8s_version, current, config.k8s_version_operator, result
        )
    )

    if result.passed:
        print("Current Kubernetes version is ok")
    else:
        print(f"Restarting minikube with Kubernetes v{config.fallback_k8s_version}")
        start_minikube(config.fallback_k8s_version)

    return result


def add_helm_repos(config: SetupConfig):
    """Add and refresh the Argo Helm repository."""
    try:
        run_command(["helm", "repo", "add", config.helm_repo_name, config.helm_repo_url])
        run_command(["helm", "repo", "update", config.helm_repo_name])
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(f"Failed to add Helm repo: {e.stderr}") from e


def install_argocd(config: SetupConfig):
    """Install or upgrade ArgoCD using Helm."""
    try:
        run_command(
            [
                "helm",
                "upgrade",
                "-i",
                config.release_name,
                config.chart,
                "--atomic",
                "--create-namespace",
                "-n",
                config.namespace,
                "-f",
                str(config.values_file),
                f"--version={config.chart_version}",
            ],
            print_output=True,
        )
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError("Failure of ArgoCD installation. Aborting.") from e


def get_argocd_password(namespace="argocd") -> str:
    """Get the initial admin password for ArgoCD."""
    try:
        result = run_command(
            [
                "kubectl",
                "-n",
                namespace,
                "get",
                "secret",
                "argocd-initial-admin-secret",
                "-o",
                "jsonpath={.data.password}",
            ]
        )
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(
            f"ArgoCD initial admin secret not found in namespace {namespace}"
        ) from e

    try:
        return base64.b64decode(result.stdout.strip(), validate=True).decode()
    except ValueError as e:
        raise ArgocdSetupError("Could not decode the ArgoCD admin password") from e


def get_argocd_server_pod(namespace="argocd") -> str:
    """Find the name of the argocd-server pod."""
    try:
        result = run_command(["kubectl", "-n", namespace, "get", "pod", "--no-headers"])
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(
            f"Could not list pods in namespace {namespace}: {e.stderr}"
        ) from e

    for line in result.stdout.splitlines():
        columns = line.split()
        if columns and "argocd-server" in columns[0]:
            return columns[0]

    raise ArgocdSetupError(f"No argocd-server pod found in namespace {namespace}")


def argocd_exec(namespace, pod, *args, check=True, quiet=False) -> subprocess.CompletedProcess:
    """Run the argocd CLI inside the argocd-server pod."""
    return run_command(
        ["kubectl", "-n", namespace, "exec", pod, "--", "argocd", *args],
        check=check,
        quiet=quiet,
    )


def argocd_login(namespace, pod, password, server="localhost:8080"):
    """Log in to ArgoCD as admin from inside the server pod."""
    try:
        argocd_exec(
            namespace,
            pod,
            "login",
            server,
            "--insecure",
            "--username=admin",
            f"--password={password}",
        )
    except subprocess.CalledProcessError as e:
        raise ArgocdSetupError(f"Failed to log in to ArgoCD: {e.stderr}") from e


def sync_has_errors(output: str) -> bool:
    """Check 'argocd app sync' output for an error phase."""
    for line in output.splitlines():
        columns = line.split()
        if " Error" in line and len(columns) > 1 and columns[1] == "Error":
            return True
    return False


def sync_until_clean(namespace, pod, app, delay):
    """Force-sync an application, terminating and retrying while the sync errors."""

    def sync():
        return argocd_exec(
            namespace, pod, "app", "sync", "--force", app, check=False, quiet=True
        )

    while sync_has_errors(sync().stdout):
        print(f"Hard refresh {app}...")
        argocd_exec(namespace, pod, "app", "terminate-op", app, check=False, quiet=True)
        time.sleep(delay)

    print(f"Application {app} synced.")


def parse_health_status(output: str) -> Optional[str]:
    for line in output.splitlines():
        if line.startswith("Health Status:"):
            columns = line.split()
            return columns[2] if len(columns) > 2 else None
    return None


def wait_for_healthy(namespace, pod, app, delay):
    """Poll an application until ArgoCD reports it Healthy."""
    while True:
        result = argocd_exec(namespace, pod, "app", "get", app, check=False, quiet=True)
        if parse_health_status(result.stdout) == "Healthy":
            print(f"{app} is healthy.")
            return
        print(f"{app} is getting up. Waiting...")
        time.sleep(delay)


def check_apps(config: SetupConfig) -> str:
    """Log in to ArgoCD, sync the applications and wait for them to be healthy."""
    password = get_argocd_password(config.namespace)
    pod = get_argocd_server_pod(config.namespace)

    argocd_login(config.namespace, pod, password)

    sync_until_clean(config.namespace, pod, config.root_app, config.retry_delay)
    for app in config.health_apps:
        wait_for_healthy(config.namespace, pod, app, config.retry_delay)
    if config.infra_app:
        sync_until_clean(config.namespace, pod, config.infra_app, config.retry_delay)

    return password


def print_access_banner(config: SetupConfig, password: str):
    if not config.port_forwards:
        return

    *apps, argocd = config.port_forwards
    print()
    for forward in apps:
        print(f"{forward.label} available on {Colors.CYAN.value}{forward.url}{Colors.RESET.value}")
    print(
        f"\n{Colors.BOLD.value}{Colors.CYAN.value}{argocd.label}{Colors.RESET.value} "
        f"available on {Colors.CYAN.value}{argocd.url}{Colors.RESET.value} with:"
    )
    print(f"{Colors.BOLD.value}Login:{Colors.RESET.value} admin")
    print(
        f"{Colors.BOLD.value}{Colors.GREEN.value}Password:{Colors.RESET.value} "
        f"{Colors.YELLOW.value}{password}{Colors.RESET.value}\n"
    )


def start_port_forwards(config: SetupConfig):
    """Forward every service, keeping the last forward in the foreground."""
    if not config.port_forwards:
        return

    *background, foreground = config.port_forwards
    processes = []
    try:
        for forward in background:
            print(f"Running: {' '.join(forward.command())}")
            processes.append(subprocess.Popen(forward.command()))

        print(f"Running: {' '.join(foreground.command())}")
        result = subprocess.run(foreground.command())
        if result.returncode != 0:
            raise ArgocdSetupError(
                f"Port-forward to service/{foreground.service} exited with "
                f"code {result.returncode}"
            )
    finally:
        for process in processes:
            process.terminate()
            process.wait()


def build_config(args) -> SetupConfig:
    """Merge the config file with command line overrides."""
    config = SetupConfig.from_dict(load_config(args.config))
    for name in (
        "namespace",
        "values_file",
        "chart_version",
        "min_k8s_version",
        "fallback_k8s_version",
        "retry_delay",
    ):
        value = getattr(args, name, None)
        if value is not None:
            setattr(config, name, value)
    return config


def start(args):
    """Bootstraps the local ArgoCD environment."""
    config = build_config(args)
    print("Starting local ArgoCD environment...")

    check_values_file(config.values_file)
    check_dependencies()
    ensure_minikube_running()
    check_k8s_version(config)
    add_helm_repos(config)
    install_argocd(config)
    password = check_apps(config)

    print_access_banner(config, password)
    start_port_forwards(config)


def stop(args):
    """Stops the local minikube cluster."""
    print("Stopping minikube...")
    stop_minikube()
    print("Minikube stopped.")


def show_password(args):
    """Prints the ArgoCD admin password."""
    config = build_config(args)
    print(get_argocd_password(config.namespace))


def port_forward(args):
    """Exposes the applications and ArgoCD on localhost."""
    config = build_config(args)
    print_access_banner(config, get_argocd_password(config.namespace))
    start_port_forwards(config)


def compare_versions(args) -> int:
    """Compares two versions against an expected operator."""
    try:
        result = evaluate(args.version_a, args.version_b, args.operator)
    except (InvalidVersionFormat, UnrecognizedOperator) as e:
        raise ArgocdSetupError(str(e)) from e

    print(format_gate_report(args.version_a, args.version_b, args.operator, result))
    return 0 if result.passed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap a local ArgoCD environment with minikube."
    )
    subparsers = parser.add_subparsers(title="commands", dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        default=CONFIG_FILE,
        help="YAML file overriding the default settings",
    )
    common.add_argument("--namespace", help="Kubernetes namespace for ArgoCD")

    start_parser = subparsers.add_parser(
        "start", parents=[common], help="Bootstrap the ArgoCD environment"
    )
    start_parser.add_argument(
        "--values", dest="values_file", type=Path, help="Helm values file for ArgoCD"
    )
    start_parser.add_argument("--chart-version", help="argo-cd chart version")
    start_parser.add_argument(
        "--min-k8s-version", help="Kubernetes server version must be above this"
    )
    start_parser.add_argument(
        "--fallback-k8s-version",
        help="Kubernetes version minikube is restarted with when the server is too old",
    )
    start_parser.add_argument(
        "--retry-delay", type=int, help="Seconds between sync and health checks"
    )
    start_parser.set_defaults(func=start)

    stop_parser = subparsers.add_parser("stop", help="Stop the minikube cluster")
    stop_parser.set_defaults(func=stop)

    password_parser = subparsers.add_parser(
        "password", parents=[common], help="Print the ArgoCD admin password"
    )
    password_parser.set_defaults(func=show_password)

    forward_parser = subparsers.add_parser(
        "forward", parents=[common], help="Port-forward the applications and ArgoCD"
    )
    forward_parser.set_defaults(func=port_forward)

    compare_parser = subparsers.add_parser(
        "compare", help="Check the relation between two dotted versions"
    )
    compare_parser.add_argument("version_a")
    compare_parser.add_argument("version_b")
    compare_parser.add_argument("operator", help="expected relation: '=', '>' or '<'")
    compare_parser.set_defaults(func=compare_versions)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        sys.exit(args.func(args) or 0)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(1)
    except ArgocdSetupError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
