"""
Bootstrap sequence for the fleet instances.

The sequence is plain data: an ordered tuple of steps, each carrying its own
``ignore_failure`` flag. ``render_cloud_config`` turns it into a cloud-init
document where every step is one ``runcmd`` entry, so the order below is the
order the instance executes.
"""

import os
import shlex
import yaml
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config import DeploymentConfig

ASSETS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "assets")
STAGING_DIR = "/var/lib/simple-infra/files"
COMPOSE_INSTALL_PATH = "/usr/local/lib/docker/cli-plugins/"
COMPOSE_DOWNLOAD_URL = "https://github.com/docker/compose/releases/latest/download/docker-compose-$(uname -s)-$(uname -m)"
ROLLOUT_BASE_URL = "https://raw.githubusercontent.com/wowu/docker-rollout/main/"
APP_DIR = "/home/ec2-user/app"
COMPOSE_FILE_KEY = "docker-compose.yml"
LOG_PREFIX = "simple-infra"


@dataclass(frozen=True)
class CommandStep:
    command: str
    ignore_failure: bool = True

    def describe(self) -> str:
        return self.command.split()[0]

    def shell(self, staged: Optional[str] = None) -> str:
        return self.command


@dataclass(frozen=True)
class PackageStep:
    name: str
    ignore_failure: bool = True

    def describe(self) -> str:
        return f"package {self.name}"

    def shell(self, staged: Optional[str] = None) -> str:
        return f"dnf -y install {shlex.quote(self.name)}"


@dataclass(frozen=True)
class UserStep:
    name: str
    groups: Tuple[str, ...] = ()
    ignore_failure: bool = True

    def describe(self) -> str:
        return f"user {self.name}"

    def shell(self, staged: Optional[str] = None) -> str:
        user = shlex.quote(self.name)
        command = f"(id -u {user} >/dev/null 2>&1 || useradd {user})"
        if self.groups:
            command += f" && usermod -aG {shlex.quote(','.join(self.groups))} {user}"
        return command


@dataclass(frozen=True)
class FileStep:
    """Places a file from a repo asset, an inline string or a URL."""
    path: str
    source: Optional[str] = None
    content: Optional[str] = None
    url: Optional[str] = None
    mode: str = "0644"
    owner: str = "root"
    group: str = "root"
    ignore_failure: bool = True

    def __post_init__(self):
        given = [v for v in (self.source, self.content, self.url) if v is not None]
        if len(given) != 1:
            raise ValueError(f"File step for '{self.path}' needs exactly one of source, content or url")

    def describe(self) -> str:
        return f"file {self.path}"

    def payload(self, assets_dir: str) -> Optional[str]:
        if self.content is not None:
            return self.content
        if self.source is not None:
            with open(os.path.join(assets_dir, self.source), "r") as file:
                return file.read()
        return None

    def shell(self, staged: Optional[str] = None) -> str:
        path = shlex.quote(self.path)
        if staged is not None:
            return (
                f"install -D -m {self.mode} -o {shlex.quote(self.owner)} -g {shlex.quote(self.group)} "
                f"{shlex.quote(staged)} {path}"
            )
        return (
            f"mkdir -p {shlex.quote(os.path.dirname(self.path))}"
            f" && curl -fsSL {shlex.quote(self.url)} -o {path}"
            f" && chmod {self.mode} {path}"
            f" && chown {shlex.quote(self.owner + ':' + self.group)} {path}"
        )


@dataclass(frozen=True)
class S3FileStep:
    path: str
    bucket: str
    key: str
    owner: str = "root"
    group: str = "root"
    ignore_failure: bool = True

    def describe(self) -> str:
        return f"s3 object {self.key}"

    def shell(self, staged: Optional[str] = None) -> str:
        path = shlex.quote(self.path)
        return (
            f"mkdir -p {shlex.quote(os.path.dirname(self.path))}"
            f" && aws s3 cp {shlex.quote(f's3://{self.bucket}/{self.key}')} {path}"
            f" && chown {shlex.quote(self.owner + ':' + self.group)} {path}"
        )


@dataclass(frozen=True)
class ServiceStep:
    name: str
    ensure_running: bool = True
    ignore_failure: bool = True

    def describe(self) -> str:
        return f"service {self.name}"

    def shell(self, staged: Optional[str] = None) -> str:
        service = shlex.quote(self.name)
        if self.ensure_running:
            return f"systemctl daemon-reload && systemctl enable --now {service}"
        return f"systemctl daemon-reload && systemctl enable {service}"


Step = Union[CommandStep, PackageStep, UserStep, FileStep, S3FileStep, ServiceStep]


def bootstrap_sequence(config: DeploymentConfig) -> Tuple[Step, ...]:
    steps: List[Step] = [
        # Install any new security updates available.
        CommandStep("dnf -y --security update"),

        # The package creates the docker group the files below belong to.
        PackageStep("docker"),

        # Utils to log in to the ECR and pull.
        FileStep("/usr/local/bin/ec2-region", source="aws-scripts/ec2-region", mode="0750", group="docker"),
        FileStep("/usr/local/bin/ec2-account-id", source="aws-scripts/ec2-account-id", mode="0750", group="docker"),
        FileStep("/usr/local/bin/docker-auth-ecr", source="aws-scripts/docker-auth-ecr", mode="0750", group="docker"),

        UserStep("ec2-user", groups=("docker",)),
        ServiceStep("docker"),
        CommandStep("/usr/local/bin/docker-auth-ecr"),

        # Compose is not packaged for Amazon Linux, install the CLI plugin by hand.
        CommandStep(f"mkdir -p {COMPOSE_INSTALL_PATH}"),
        CommandStep(f"curl -fsSL {COMPOSE_DOWNLOAD_URL} -o {COMPOSE_INSTALL_PATH}docker-compose"),
        CommandStep(f"chmod +x {COMPOSE_INSTALL_PATH}docker-compose"),

        # docker-rollout replaces compose services without downtime.
        FileStep(COMPOSE_INSTALL_PATH + "docker-rollout", url=ROLLOUT_BASE_URL + "docker-rollout", mode="0750", group="docker"),
        FileStep(COMPOSE_INSTALL_PATH + "docker-rollout-readme.md", url=ROLLOUT_BASE_URL + "README.md"),
        FileStep(COMPOSE_INSTALL_PATH + "docker-rollout-license", url=ROLLOUT_BASE_URL + "LICENSE"),

        FileStep("/etc/systemd/system/docker-cleanup.timer", source="systemd/docker-cleanup.timer"),
        FileStep("/etc/systemd/system/docker-cleanup.service", source="systemd/docker-cleanup.service"),
        FileStep("/etc/systemd/system/docker-compose@.service", source="systemd/docker-compose@.service"),
        ServiceStep("docker-cleanup.timer"),

        S3FileStep(f"{APP_DIR}/{COMPOSE_FILE_KEY}", bucket=config.bucket_name, key=COMPOSE_FILE_KEY,
                   owner="ec2-user", group="docker"),
        CommandStep(f"chown -R ec2-user {APP_DIR}"),
        ServiceStep("docker-compose@app"),
    ]

    if config.shell_prompt:
        steps += [
            CommandStep("curl -s https://ohmyposh.dev/install.sh | bash -s"),
            FileStep("/etc/profile.d/prompt.sh", content='eval "$(oh-my-posh init bash)"\n'),
        ]

    return tuple(steps)


def ignored_failure_steps(steps: Sequence[Step]) -> Tuple[Step, ...]:
    return tuple(step for step in steps if step.ignore_failure)


def _guard(command: str, label: str, ignore_failure: bool) -> str:
    announce = f"echo {shlex.quote(f'{LOG_PREFIX}: {label}')}"
    if ignore_failure:
        failed = f"echo {shlex.quote(f'{LOG_PREFIX}: {label} failed, continuing')} >&2"
    else:
        failed = f"{{ echo {shlex.quote(f'{LOG_PREFIX}: {label} failed, aborting')} >&2; exit 1; }}"
    return f"{announce}; {{ {command} ; }} || {failed}"


def render_cloud_config(steps: Sequence[Step], assets_dir: str = ASSETS_DIR) -> str:
    write_files: List[Dict[str, Any]] = []
    runcmd: List[str] = []

    for index, step in enumerate(steps, start=1):
        staged = None
        if isinstance(step, FileStep):
            payload = step.payload(assets_dir)
            if payload is not None:
                staged = f"{STAGING_DIR}/{index:02d}"
                write_files.append({
                    "path": staged,
                    "permissions": "0600",
                    "owner": "root:root",
                    "content": payload,
                })
        label = f"step {index} ({step.describe()})"
        runcmd.append(_guard(step.shell(staged), label, step.ignore_failure))

    runcmd.append(f"rm -rf {STAGING_DIR}")

    document = {"write_files": write_files, "runcmd": runcmd}
    return "#cloud-config\n" + yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
