"""Request and response envelopes for the SlashAuth protocol."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .types import InvalidEnvelopeError, UnknownMethodError


class Method(Enum):
    """The three protocol operations."""
    REQUEST_TOKEN = "requestToken"
    AUTHZ = "authz"
    MAGICLINK = "magiclink"

    @classmethod
    def parse(cls, name: Any) -> "Method":
        """
        Look up a method by its wire name.

        Raises:
            UnknownMethodError: If the name is not one of the protocol methods
        """
        for method in cls:
            if method.value == name:
                return method
        raise UnknownMethodError(str(name))


def canonical_json(value: Any) -> str:
    """Serialize a value as compact JSON with a stable key order."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def decode_json_object(data: bytes) -> dict:
    """
    Parse raw bytes into a JSON object.

    Raises:
        InvalidEnvelopeError: If the bytes are not a UTF-8 JSON object
    """
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidEnvelopeError(f"Malformed envelope: {e}") from e

    if not isinstance(obj, dict):
        raise InvalidEnvelopeError("Envelope must be a JSON object")

    return obj


@dataclass
class RequestEnvelope:
    """
    A client request.

    Wire format (compact JSON):
        {"method": "authz" | "magiclink" | "requestToken",
         "params": {...},
         "publicKey": <hex>,
         "nonce": <token or client nonce>,
         "signature": <hex>}
    """

    method: Method
    public_key: str
    params: dict = field(default_factory=dict)
    nonce: Optional[str] = None
    signature: Optional[str] = None

    def to_dict(self) -> dict:
        obj = {
            "method": self.method.value,
            "params": self.params,
            "publicKey": self.public_key,
        }
        if self.nonce is not None:
            obj["nonce"] = self.nonce
        if self.signature is not None:
            obj["signature"] = self.signature
        return obj

    @classmethod
    def from_dict(cls, obj: dict) -> "RequestEnvelope":
        """
        Build a request from a parsed JSON object.

        Raises:
            UnknownMethodError: If the method is not a protocol method
            InvalidEnvelopeError: If a field has the wrong type
        """
        method = Method.parse(obj.get("method"))

        public_key = obj.get("publicKey")
        if not isinstance(public_key, str) or not public_key:
            raise InvalidEnvelopeError("Missing publicKey")

        params = obj.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidEnvelopeError("params must be an object")

        nonce = obj.get("nonce")
        if nonce is not None and not isinstance(nonce, str):
            raise InvalidEnvelopeError("nonce must be a string")

        signature = obj.get("signature")
        if signature is not None and not isinstance(signature, str):
            raise InvalidEnvelopeError("signature must be a string")

        return cls(
            method=method,
            public_key=public_key,
            params=params,
            nonce=nonce,
            signature=signature,
        )


@dataclass
class ResponseEnvelope:
    """
    A server response: a signed result or an error.

    Wire format (compact JSON):
        {"result": {...}, "signature": <hex>}
        {"error": {"message": <text>}}
    """

    result: Optional[Any] = None
    signature: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, message: str) -> "ResponseEnvelope":
        return cls(error=message)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"error": {"message": self.error}}

        obj = {"result": self.result}
        if self.signature is not None:
            obj["signature"] = self.signature
        return obj

    @classmethod
    def from_dict(cls, obj: dict) -> "ResponseEnvelope":
        """
        Build a response from a parsed JSON object.

        Raises:
            InvalidEnvelopeError: If neither a result nor an error is present
        """
        if "error" in obj:
            error = obj["error"]
            if isinstance(error, dict):
                message = error.get("message")
            else:
                message = error
            return cls(error=str(message) if message is not None else "Unknown error")

        if "result" not in obj:
            raise InvalidEnvelopeError("Response has neither result nor error")

        signature = obj.get("signature")
        if signature is not None and not isinstance(signature, str):
            raise InvalidEnvelopeError("signature must be a string")

        return cls(result=obj["result"], signature=signature)


def encode_request(request: RequestEnvelope) -> bytes:
    """Encode a request to UTF-8 JSON bytes."""
    return canonical_json(request.to_dict()).encode("utf-8")


def decode_request(data: bytes) -> RequestEnvelope:
    """
    Decode bytes into a request.

    Raises:
        InvalidEnvelopeError: If the bytes are not a valid request
        UnknownMethodError: If the method is not a protocol method
    """
    return RequestEnvelope.from_dict(decode_json_object(data))


def encode_response(response: ResponseEnvelope) -> bytes:
    """Encode a response to UTF-8 JSON bytes."""
    return canonical_json(response.to_dict()).encode("utf-8")


def decode_response(data: bytes) -> ResponseEnvelope:
    """
    Decode bytes into a response.

    Raises:
        InvalidEnvelopeError: If the bytes are not a valid response
    """
    return ResponseEnvelope.from_dict(decode_json_object(data))
