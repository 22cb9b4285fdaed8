"""
Shared Ollama utilities: base URL resolution and model availability.
"""

import logging
import os

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama API root.

    Priority: explicit value, OLLAMA_HOST, localhost default. OLLAMA_HOST
    is often given as host:port without a scheme.
    """
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if "://" not in url:
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_has_model(base_url: str, model: str) -> bool | None:
    """Check if an Ollama model is available locally.

    Returns None when Ollama cannot be asked (unreachable, odd response).
    """
    # Ollama lists models as "name:tag"; a bare name means ":latest"
    bare = model.split(":")[0] if ":" in model else model

    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
        installed = {m["name"] for m in resp.json().get("models", [])}
    except (requests.RequestException, ValueError, KeyError, TypeError) as e:
        logger.debug("Cannot list Ollama models at %s: %s", base_url, e)
        return None

    if model in installed or f"{model}:latest" in installed:
        return True
    return bare in installed or f"{bare}:latest" in installed
