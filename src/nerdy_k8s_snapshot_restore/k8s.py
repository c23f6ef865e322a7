from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from kubernetes import client, config
from kubernetes.client import ApiException


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi
    version_api: client.VersionApi


class KubernetesAuthenticationError(RuntimeError):
    """The controller could not build API credentials at startup."""

    @classmethod
    def for_in_cluster(cls, error: Exception) -> KubernetesAuthenticationError:
        return cls(
            f"controller could not authenticate with its service account: {error_message(error)}. "
            "Check that the Deployment sets serviceAccountName, that automountServiceAccountToken "
            "is not disabled, and that KUBERNETES_SERVICE_HOST is present in the pod environment."
        )

    @classmethod
    def for_kubeconfig(cls, error: Exception, *, path: str | None, context: str | None) -> KubernetesAuthenticationError:
        target = f"kubeconfig {path!r}" if path else "the default kubeconfig"
        if context:
            target = f"{target} (context {context!r})"
        return cls(
            f"controller could not load {target}: {error_message(error)}. "
            "Out-of-cluster runs need a readable kubeconfig with access to the restore CRD; "
            "set NKSR_IN_CLUSTER=true when running as a Deployment."
        )


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    if in_cluster:
        try:
            config.load_incluster_config()
        except Exception as error:  # pylint: disable=broad-except
            raise KubernetesAuthenticationError.for_in_cluster(error) from error
    else:
        path = _kubeconfig_file(kubeconfig_path)
        try:
            config.load_kube_config(config_file=path, context=context)
        except Exception as error:  # pylint: disable=broad-except
            raise KubernetesAuthenticationError.for_kubeconfig(error, path=path, context=context) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        version_api=client.VersionApi(api_client),
    )


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def is_already_exists(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 409


def format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    message = f"failed to {operation}: API status {status} ({reason})."
    return f"{message} {hint}" if hint else message


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


def _kubeconfig_file(kubeconfig_path: str | None) -> str | None:
    # None lets the client fall back to $KUBECONFIG and ~/.kube/config.
    if not kubeconfig_path or not kubeconfig_path.strip():
        return None
    return str(Path(kubeconfig_path.strip()).expanduser())
