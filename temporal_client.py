"""Temporal client factory.

Creates connections to Temporal using settings from the environment.
Temporal Cloud is used when an API key is configured; otherwise the
client connects to a local dev server without TLS.
"""

import os
import ssl
from pathlib import Path
from typing import Optional

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client

DEFAULT_ENDPOINT = "localhost:7233"


async def get_temporal_client() -> Client:
    """Create and return a Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Temporal endpoint (default "localhost:7233")
    - TEMPORAL_NAMESPACE: Namespace (default "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud (enables TLS)
    - TEMPORAL_CERT_PATH: Path to client certificate (optional, for mTLS)

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If TEMPORAL_CERT_PATH is set without TEMPORAL_API_KEY
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT", DEFAULT_ENDPOINT)
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")
    cert_path = os.getenv("TEMPORAL_CERT_PATH")

    if not api_key:
        if cert_path:
            raise ValueError(
                "TEMPORAL_CERT_PATH is set but TEMPORAL_API_KEY is not. "
                "Set both to connect to Temporal Cloud."
            )
        return await Client.connect(endpoint, namespace=namespace)

    tls_config: Optional[ssl.SSLContext] = ssl.create_default_context()
    if cert_path:
        tls_config.load_cert_chain(cert_path)

    return await Client.connect(
        target_host=endpoint,
        namespace=namespace,
        tls=tls_config,
        api_key=api_key,
    )
