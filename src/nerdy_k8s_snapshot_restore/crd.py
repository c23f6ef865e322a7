from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import logging
import re
import time
from typing import Any, Callable

from kubernetes import client
from kubernetes.dynamic import DynamicClient
import yaml

from .k8s import error_message, is_already_exists, is_not_found

CRD_MANIFEST_PATH = Path(__file__).parent / "manifests" / "volumesnapshotrestore-crd.yaml"
V1_API_VERSION = "apiextensions.k8s.io/v1"
V1BETA1_API_VERSION = "apiextensions.k8s.io/v1beta1"
V1_MINIMUM_SERVER_VERSION = (1, 16)
DEFAULT_VALIDATE_TIMEOUT_SECONDS = 60
DEFAULT_VALIDATE_INTERVAL_SECONDS = 5

logger = logging.getLogger(__name__)


class CrdRegistrationError(RuntimeError):
    """Raised when the restore CRD cannot be created or never becomes established."""


def load_crd_manifest(path: Path = CRD_MANIFEST_PATH) -> dict[str, Any]:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def to_v1beta1(manifest: dict[str, Any]) -> dict[str, Any]:
    """Derive the legacy v1beta1 CRD body from the v1 manifest."""
    body = deepcopy(manifest)
    body["apiVersion"] = V1BETA1_API_VERSION
    spec = body["spec"]
    schema = None
    for version in spec["versions"]:
        version_schema = version.pop("schema", None)
        schema = schema or version_schema
        columns = version.pop("additionalPrinterColumns", None)
        if columns:
            spec["additionalPrinterColumns"] = [
                {**{key: value for key, value in column.items() if key != "jsonPath"}, "JSONPath": column["jsonPath"]}
                for column in columns
            ]
    spec["version"] = spec["versions"][0]["name"]
    if schema:
        spec["validation"] = schema
    return body


def parse_server_version(major: str, minor: str) -> tuple[int, int]:
    # Managed clusters report minors such as "27+".
    major_digits = re.match(r"\d+", major or "")
    minor_digits = re.match(r"\d+", minor or "")
    if major_digits is None or minor_digits is None:
        raise CrdRegistrationError(f"unable to parse Kubernetes server version {major!r}.{minor!r}")
    return int(major_digits.group()), int(minor_digits.group())


def requires_v1_registration(version_api: client.VersionApi) -> bool:
    info = version_api.get_code()
    return parse_server_version(info.major, info.minor) >= V1_MINIMUM_SERVER_VERSION


class CrdRegistrar:
    def __init__(
        self,
        *,
        api_client: client.ApiClient,
        version_api: client.VersionApi,
        dynamic_client_factory: Callable[[client.ApiClient], Any] = DynamicClient,
        timeout_seconds: float = DEFAULT_VALIDATE_TIMEOUT_SECONDS,
        interval_seconds: float = DEFAULT_VALIDATE_INTERVAL_SECONDS,
        manifest: dict[str, Any] | None = None,
    ) -> None:
        self.api_client = api_client
        self.version_api = version_api
        self.dynamic_client_factory = dynamic_client_factory
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.manifest = manifest if manifest is not None else load_crd_manifest()

    def register(self) -> str:
        """Create the CRD and block until it is established. Returns the API version used."""
        if requires_v1_registration(self.version_api):
            api_version, body = V1_API_VERSION, deepcopy(self.manifest)
        else:
            api_version, body = V1BETA1_API_VERSION, to_v1beta1(self.manifest)

        name = body["metadata"]["name"]
        resource = self.dynamic_client_factory(self.api_client).resources.get(
            api_version=api_version,
            kind="CustomResourceDefinition",
        )
        try:
            resource.create(body=body)
            logger.info("Created CustomResourceDefinition %s (%s)", name, api_version)
        except Exception as error:  # pylint: disable=broad-except
            if not is_already_exists(error):
                raise CrdRegistrationError(
                    f"unable to create CustomResourceDefinition {name}: {error_message(error)}"
                ) from error
            logger.info("CustomResourceDefinition %s already exists", name)

        self._wait_for_established(resource, name)
        return api_version

    def _wait_for_established(self, resource: Any, name: str) -> None:
        deadline = time.time() + self.timeout_seconds
        while True:
            try:
                current = resource.get(name=name).to_dict()
            except Exception as error:  # pylint: disable=broad-except
                if not is_not_found(error):
                    raise CrdRegistrationError(
                        f"unable to read CustomResourceDefinition {name}: {error_message(error)}"
                    ) from error
                current = {}

            conditions = (current.get("status") or {}).get("conditions") or []
            for condition in conditions:
                if condition.get("type") == "Established" and condition.get("status") == "True":
                    return
                if condition.get("type") == "NamesAccepted" and condition.get("status") == "False":
                    raise CrdRegistrationError(
                        f"CustomResourceDefinition {name} names were rejected: {condition.get('message')}"
                    )

            if time.time() >= deadline:
                raise CrdRegistrationError(
                    f"CustomResourceDefinition {name} was not established within {self.timeout_seconds}s"
                )
            time.sleep(self.interval_seconds)
