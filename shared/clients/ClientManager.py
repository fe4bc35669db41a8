from shared.clients.ClientInterface import ClientInterface
from shared.exceptions import ConfigurationError
from shared.helper.HelperConfig import HelperConfig

# client type -> class name prefix, e.g. "rag" -> RAGClientPinecone
CLIENT_CLASS_PREFIXES: dict[str, str] = {
    "rag": "RAG",
    "embed": "Embed",
    "llm": "LLM",
    "store": "Store",
}


class ClientManager:
    """
    Instantiates the client configured for one client type.

    The engine is read from "{TYPE}_ENGINE" and resolved to the class
    shared.clients.{type}.{engine}.{Prefix}Client{Engine}.
    """

    def __init__(self, helper_config: HelperConfig, client_type: str):
        if client_type not in CLIENT_CLASS_PREFIXES:
            raise ValueError(f"Unknown client type '{client_type}'.")
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client_type = client_type
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """
        Reads the engine for this client type from ENV configuration.

        Returns:
            str: Capitalised engine name (e.g. "Pinecone").

        Raises:
            ConfigurationError: If {TYPE}_ENGINE is not set.
        """
        engine = self.helper_config.get_string_val(f"{self.client_type.upper()}_ENGINE")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> ClientInterface:
        """
        Imports and instantiates the client class for the configured engine.

        Returns:
            ClientInterface: The instantiated client.

        Raises:
            ConfigurationError: If the engine is unsupported or cannot be imported.
        """
        engine = self._get_engine_from_env()
        class_name = f"{CLIENT_CLASS_PREFIXES[self.client_type]}Client{engine}"
        try:
            module = __import__(
                f"shared.clients.{self.client_type}.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Unsupported {self.client_type} engine '{engine}'. Error: {e}")
        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated %s client for engine: %s", self.client_type, engine)
        return client

    def get_client(self) -> ClientInterface:
        """
        Returns the instantiated client.
        """
        return self.client
