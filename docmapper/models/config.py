from pydantic import BaseModel


class EnvConfig(BaseModel):
    """
    Represents a single configuration parameter required by a storage client.

    Attributes:
        env_key (str): The raw key of the environment variable, without the client prefix (e.g. "BASE_URL").
        val_type (str): The expected type of the value. Supported types are "string", "number", "bool" and "list".
        default (str | int | float | bool | list | None): Value used when the variable is not set. If None, the variable is required and an error is raised when it is missing.
    """

    env_key: str
    val_type: str
    default: str | int | float | bool | list | None = None
