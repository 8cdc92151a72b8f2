"""
This module defines the data structures for our deployment and reads the
configuration they are built from.

The three identity strings come from the environment and are required. The
optional settings file only carries extras (tags, an HTTPS certificate, the
shell prompt) and may be absent.
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

STACK_NAME_VAR = "SINFRA_STACK_NAME"
BUCKET_VAR = "SINFRA_S3_BUCKET"
REPOSITORY_VAR = "SINFRA_ECR_REPO"
SETTINGS_FILE_VAR = "SINFRA_SETTINGS_FILE"

DEFAULT_SETTINGS_FILE = "config.yaml"

SETTINGS_KEYS = {
    "tags": dict,
    "certificate_arn": str,
    "shell_prompt": bool,
}


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or malformed."""


@dataclass(frozen=True)
class DeploymentConfig:
    stack_name: str
    bucket_name: str
    repository_name: str
    tags: Dict[str, str] = field(default_factory=dict)
    certificate_arn: Optional[str] = None
    shell_prompt: bool = False


@dataclass(frozen=True)
class Placement:
    region: str
    zones: Tuple[str, ...]


@dataclass(frozen=True)
class Json:
    """An args value serialised to a JSON string once its refs are resolved."""
    document: Any


@dataclass(frozen=True)
class AWSResource:
    name: str
    type: str
    args: Dict[str, Any]
    existing: bool = False


@dataclass(frozen=True)
class GraphOutput:
    name: str
    ref: str


@dataclass(frozen=True)
class ResourceGraph:
    resources: Tuple[AWSResource, ...]
    outputs: Tuple[GraphOutput, ...]
    # Steps rendered into the fleet user data, in boot order.
    bootstrap: Tuple[Any, ...] = ()

    def of_type(self, resource_type: str) -> Tuple[AWSResource, ...]:
        return tuple(r for r in self.resources if r.type == resource_type)

    def get(self, name: str) -> AWSResource:
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)


def read_required(environ: Mapping[str, str], variable: str, description: str) -> str:
    value = environ.get(variable, "")
    if value == "":
        raise ConfigurationError(f"{variable} env var missing: please provide {description}.")
    return value


def load_settings(file_path: str) -> Dict[str, Any]:
    """Load and validate the optional YAML settings file."""
    if not os.path.exists(file_path):
        return {}
    with open(file_path, "r") as file:
        settings = yaml.safe_load(file) or {}

    if not isinstance(settings, dict):
        raise ConfigurationError(f"Settings file '{file_path}' must contain a mapping.")
    for key, value in settings.items():
        expected = SETTINGS_KEYS.get(key)
        if expected is None:
            raise ConfigurationError(f"Unknown settings key: {key}")
        if not isinstance(value, expected):
            raise ConfigurationError(f"Settings key '{key}' must be of type {expected.__name__}")
    return settings


def load_config(environ: Optional[Mapping[str, str]] = None) -> DeploymentConfig:
    if environ is None:
        environ = os.environ

    # Order matters: the first missing variable is the one reported.
    stack_name = read_required(environ, STACK_NAME_VAR, "a stack name")
    bucket_name = read_required(environ, BUCKET_VAR, "the S3 bucket holding `docker-compose.yml`")
    repository_name = read_required(environ, REPOSITORY_VAR, "the ECR name of the private docker repo")

    settings = load_settings(environ.get(SETTINGS_FILE_VAR) or DEFAULT_SETTINGS_FILE)
    tags = {str(k): str(v) for k, v in settings.get("tags", {}).items()}

    return DeploymentConfig(
        stack_name=stack_name,
        bucket_name=bucket_name,
        repository_name=repository_name,
        tags=tags,
        certificate_arn=settings.get("certificate_arn") or None,
        shell_prompt=settings.get("shell_prompt", False),
    )
