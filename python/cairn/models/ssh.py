# cairn/models/ssh.py

from pydantic import BaseModel, Field, model_validator
from typing import List, Optional


class SSHCredentials(BaseModel):
    """
    Cluster-wide SSH credentials, as written in the Clusterfile.
    Exactly one of private_key_file / private_key is normally set; with neither,
    ssh falls back to the invoking user's agent and default identities.
    """

    user: str = "root"
    port: int = Field(default=22, ge=1, le=65535)
    private_key_file: Optional[str] = None
    private_key: Optional[str] = None
    host_key_checking: bool = False

    @model_validator(mode="after")
    def check_single_key_source(self) -> "SSHCredentials":
        if self.private_key_file and self.private_key:
            raise ValueError("private_key_file and private_key are mutually exclusive")
        if self.private_key is not None and not self.private_key.strip():
            raise ValueError("private_key must be a non-empty string")
        return self

    def for_host(
        self, hostname: str, identity_file: Optional[str] = None
    ) -> "SSHConfig":
        return SSHConfig(
            user=self.user,
            hostname=hostname,
            port=self.port,
            identity_file=identity_file or self.private_key_file,
            host_key_checking=self.host_key_checking,
        )


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to one remote host.
    If host_key_checking is False, host keys are neither verified nor recorded.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    identity_file: Optional[str] = None
    host_key_checking: bool = False

    def ssh_options(self, connect_timeout: int) -> List[str]:
        opts = [
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={connect_timeout}",
        ]
        if not self.host_key_checking:
            opts += [
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
                "-o",
                "LogLevel=ERROR",
            ]
        if self.identity_file:
            opts += ["-i", self.identity_file]
        return opts

    @property
    def target(self) -> str:
        return f"{self.user}@{self.hostname}"
