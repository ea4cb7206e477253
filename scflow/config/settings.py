"""
Application settings.

Values come from environment variables, optionally loaded from a ``.env``
file in the working directory.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv


class Settings:
    """
    Application settings with environment variable overrides.

    Recognised variables:
        SCFLOW_LOG_LEVEL: Logging level (default INFO)
        SCFLOW_RANDOM_STATE: Default PCA and clustering seed (default 0)
        SCFLOW_WORKFLOW_CONFIG: Path of a workflow configuration JSON file
        SCFLOW_OUTPUT_DIR: Directory for CLI outputs (default ./scflow_output)
    """

    def __init__(self):
        load_dotenv(find_dotenv(usecwd=True))

        self.BASE_DIR = Path(__file__).resolve().parent.parent

        self.LOG_LEVEL = os.environ.get("SCFLOW_LOG_LEVEL", "INFO").upper()
        self.RANDOM_STATE = int(os.environ.get("SCFLOW_RANDOM_STATE", "0"))

        workflow_config = os.environ.get("SCFLOW_WORKFLOW_CONFIG", "")
        self.WORKFLOW_CONFIG: Optional[Path] = (
            Path(workflow_config) if workflow_config else None
        )
        self.OUTPUT_DIR = Path(os.environ.get("SCFLOW_OUTPUT_DIR", "scflow_output"))

    def get_all_settings(self) -> Dict[str, Any]:
        """Return every upper-case setting as a dictionary."""
        return {
            key: value
            for key, value in self.__dict__.items()
            if key.isupper() and not key.startswith("_")
        }

    def get_setting(self, name: str, default: Any = None) -> Any:
        return getattr(self, name, default)


settings = Settings()


def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return settings
