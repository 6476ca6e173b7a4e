from abc import ABC, abstractmethod
from typing import Any

from docmapper.helper.HelperConfig import HelperConfig
from docmapper.models.config import EnvConfig


class ClientInterface(ABC):
    """
    Configuration and logging plumbing shared by every client.

    Configuration keys are read from the environment as ``{TYPE}_{ENGINE}_{KEY}``,
    e.g. ``STORAGE_MONGO_DEFAULT_DATABASE``.
    """

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.timeout = helper_config.get_number_val(f"{self.get_client_type().upper()}_TIMEOUT", default=30.0)
        self.validate_full_configuration()

    ##########################################
    ############### CHECKER ##################
    ##########################################

    def validate_full_configuration(self) -> None:
        """
        Validates that all required configuration values for the client are set and valid.

        Raises:
            ValueError: If any required configuration value is missing or invalid.
        """
        for config in self._get_required_config():
            _ = self.get_config_val(raw_key=config.env_key, default=config.default, val_type=config.val_type)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def get_client_type(self) -> str:
        """
        Returns the type of the client in lowercase. E.g. "storage"
        """
        return self._get_client_type().lower()

    @abstractmethod
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "storage"
        """
        pass

    def get_engine_name(self) -> str:
        """
        Returns the name of the engine used by the client in lowercase. E.g. "mongo"
        """
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        """
        Returns the name of the engine used by the client. E.g. "Mongo"
        """
        pass

    ################ CONFIG ##################
    @abstractmethod
    def _get_required_config(self) -> list[EnvConfig]:
        """
        Returns all configurations read by the client.

        Returns:
            list[EnvConfig]: A list containing the details of each configuration key.
        """
        pass

    def _get_config_key_name(self, raw_key: str) -> str:
        """
        Returns:
            str: The full configuration key name for the client. E.g. "STORAGE_TINYDB_INDENT"
        """
        key_prefix = f"{self.get_client_type().upper()}_{self.get_engine_name().upper()}"
        return f"{key_prefix}_{raw_key.upper()}"

    def get_config_val(self, raw_key: str, default: Any = None, val_type: str = "string") -> Any:
        """
        Retrieves the value of a configuration key for the client.

        Args:
            raw_key (str): The raw configuration key name
            default (Any): The default value to return if the configuration key is not set
            val_type (str): The type of the configuration value ("string", "number", "bool", "list")

        Raises:
            ValueError: If the key is missing without default, or the type is unsupported.
        """
        key = self._get_config_key_name(raw_key)
        if val_type == "string":
            return self._helper_config.get_string_val(key, default=default)
        elif val_type == "number":
            return self._helper_config.get_number_val(key, default=default)
        elif val_type == "bool":
            return self._helper_config.get_bool_val(key, default=default)
        elif val_type == "list":
            return self._helper_config.get_list_val(key, default=default)
        else:
            raise ValueError(f"Unsupported config value type '{val_type}' for env key '{raw_key}' in {self.get_client_type().upper()} client '{self.get_engine_name()}'.")

    ##########################################
    ############## LIFECYCLE #################
    ##########################################

    @abstractmethod
    async def boot(self) -> None:
        """Opens the connection and any other resources needed by the client."""
        pass

    @abstractmethod
    async def do_healthcheck(self) -> None:
        """
        Checks that the backend answers.

        Raises:
            StorageConnectionError: If the backend cannot be reached.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Releases every resource owned by the client."""
        pass
