from pydantic import BaseModel


class EnvConfig(BaseModel):
    """
    A single environment setting a client requires.

    The key is relative to the client prefix, e.g. "BASE_URL" becomes
    "RAG_PINECONE_BASE_URL" for the Pinecone index client.

    Attributes:
        env_key (str): The key relative to the client prefix.
        val_type (str): "string", "number", "bool" or "list".
        default (str | int | float | bool | list | None): Value used when the variable is unset.
            None marks the setting as required.
    """

    env_key: str
    val_type: str = "string"
    default: str | int | float | bool | list | None = None
