from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

CONFIG_FILE = "vmhosting.conf"


class DeploySettings(BaseSettings):
    HOST: str
    USER: str
    DOMAIN: str = ""
    SSH_KEY: str = "~/.ssh/id_rsa"
    ADMIN_USER: str = "root"
    HTTPS: bool = True
    PROXY: str = "caddy"
    BLUE_GREEN: bool = True
    GRACEFUL: bool = False
    DRAIN_TIMEOUT: int = 300
    BUILD_COMMAND: str = "./mvnw -DskipTests package"
    ARTIFACT_DIR: str = "target/app"
    REMOTE_COMMAND: str = "bluegreen-remote"
    LOG_FILE: str = "deploy.log"

    class Config:
        env_prefix = ""
        env_file = CONFIG_FILE
        extra = "ignore"

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # The project file wins over ambient shell variables such as USER.
        return init_settings, dotenv_settings, env_settings, file_secret_settings

    @field_validator("PROXY")
    @classmethod
    def _known_proxy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("caddy", "nginx", "none"):
            raise ValueError(f"Unsupported proxy '{value}' (caddy, nginx or none)")
        return value

    @field_validator("SSH_KEY")
    @classmethod
    def _private_key_path(cls, value: str) -> str:
        if value.endswith(".pub"):
            value = value[:-4]
        return str(Path(value).expanduser())

    @model_validator(mode="after")
    def _domain_defaults_to_host(self):
        if not self.DOMAIN:
            self.DOMAIN = self.HOST
        return self


def load_settings(config_file: str = CONFIG_FILE) -> DeploySettings:
    return DeploySettings(_env_file=config_file)
