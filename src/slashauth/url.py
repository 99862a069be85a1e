"""Challenge URL handling for handing tokens to clients out of band."""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode, urlparse, parse_qs

from .types import URL_SCHEME


@dataclass
class ChallengeURL:
    """
    The values a client recovers from a challenge URL.

    Attributes:
        token: The challenge token.
        relay_address: "host:port" of the server's listener.
        route: Path component identifying the auth endpoint.
        server_public_key: The server's current responder channel key (hex), if published.
        server_identity: The server's signing public key (hex), if published.
    """

    token: str
    relay_address: str
    route: str = ""
    server_public_key: Optional[str] = None
    server_identity: Optional[str] = None


def format_challenge_url(
    token: str,
    relay_address: str,
    route: str = "",
    server_public_key: Optional[str] = None,
    server_identity: Optional[str] = None,
) -> str:
    """
    Create a challenge URL.

    Format: slashauth://<host:port>/<route>?token=...&key=<hex>&id=<hex>

    Args:
        token: The challenge token.
        relay_address: "host:port" the client should connect to.
        route: Optional path for the auth endpoint.
        server_public_key: The responder channel key, hex encoded.
        server_identity: The server signing key, hex encoded.

    Returns:
        The challenge URL string.
    """
    params = {"token": token}
    if server_public_key is not None:
        params["key"] = server_public_key
    if server_identity is not None:
        params["id"] = server_identity

    path = route.strip("/")
    query = urlencode(params)
    return f"{URL_SCHEME}://{relay_address}/{path}?{query}"


def parse_challenge_url(url: str) -> ChallengeURL:
    """
    Parse a challenge URL.

    Args:
        url: The challenge URL string.

    Returns:
        The parsed ChallengeURL.

    Raises:
        ValueError: If the URL is invalid.
    """
    if not url:
        raise ValueError("No url")

    parsed = urlparse(url)

    if parsed.scheme != URL_SCHEME:
        raise ValueError(f"Invalid scheme: {parsed.scheme}")

    if not parsed.netloc:
        raise ValueError("Missing relay address")

    params = parse_qs(parsed.query)

    if "token" not in params:
        raise ValueError("Missing token parameter")

    return ChallengeURL(
        token=params["token"][0],
        relay_address=parsed.netloc,
        route=parsed.path.strip("/"),
        server_public_key=params["key"][0] if "key" in params else None,
        server_identity=params["id"][0] if "id" in params else None,
    )
