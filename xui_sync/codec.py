"""Decoding and encoding of the client list embedded in inbound settings.

The settings document is decoded once, at the boundary, into an
``InboundSettings`` whose clients are the variant matching the inbound's
protocol. Anything not modelled is kept verbatim.
"""

import json
from collections.abc import Iterable, Mapping
from typing import Any, Dict, List, Type

import pydantic

from xui_sync.errors import DecodeError, DuplicateIdentifier, EmptyIdentifier
from xui_sync.models import Client, EmailClient, IdClient, InboundSettings, PasswordClient

CLIENT_TYPES: Dict[str, Type[Client]] = {
    "vmess": IdClient,
    "vless": IdClient,
    "trojan": PasswordClient,
    "shadowsocks": EmailClient,
}


def client_type(protocol: str) -> Type[Client]:
    try:
        return CLIENT_TYPES[protocol]
    except KeyError:
        raise DecodeError(f"unsupported protocol: {protocol!r}") from None


def _load(blob: str | bytes | Mapping) -> Dict[str, Any]:
    if isinstance(blob, Mapping):
        return dict(blob)
    try:
        document = json.loads(blob)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"settings is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise DecodeError("settings must be a JSON object")
    return document


def decode_settings(blob: str | bytes | Mapping, protocol: str) -> InboundSettings:
    """Decode an inbound settings document.

    Args:
        blob: The settings as a JSON string or an already parsed mapping.
        protocol: The inbound protocol, selecting the client variant.

    Returns:
        The decoded settings with typed clients.

    Raises:
        DecodeError: If the document is not an object, ``clients`` is missing
            or not a list, a client entry is malformed, or the protocol is
            not supported.
    """
    cls = client_type(protocol)
    document = _load(blob)
    raw_clients = document.get("clients")
    if not isinstance(raw_clients, list):
        raise DecodeError("settings has no 'clients' list")

    clients: List[Client] = []
    for index, raw in enumerate(raw_clients):
        if not isinstance(raw, Mapping):
            raise DecodeError(f"client #{index} is not an object")
        try:
            clients.append(cls.model_validate(dict(raw)))
        except pydantic.ValidationError as exc:
            raise DecodeError(f"client #{index} is malformed: {exc}") from exc

    document["clients"] = clients
    return InboundSettings.model_validate(document)


def decode_clients(blob: str | bytes | Mapping, protocol: str) -> List[Client]:
    return decode_settings(blob, protocol).clients


def settings_document(settings: InboundSettings) -> Dict[str, Any]:
    """Dump decoded settings back to a plain document."""
    return settings.model_dump(by_alias=True, exclude_unset=True)


def encode_settings(settings: InboundSettings) -> str:
    """Encode decoded settings back to the stored JSON form.

    Fields that were never supplied are left out, so documents are not
    padded with defaults on every rewrite.
    """
    return json.dumps(settings_document(settings), ensure_ascii=False, indent=2)


def coerce_clients(protocol: str, clients: Iterable[Client | Mapping]) -> List[Client]:
    """Turn caller supplied clients into the variant of ``protocol``.

    Raises:
        DecodeError: If an entry cannot be validated.
    """
    cls = client_type(protocol)
    result: List[Client] = []
    for client in clients:
        if type(client) is cls:
            result.append(client)
            continue
        if isinstance(client, Client):
            client = client.model_dump(by_alias=True, exclude_unset=True)
        try:
            result.append(cls.model_validate(dict(client)))
        except (pydantic.ValidationError, TypeError, ValueError) as exc:
            raise DecodeError(f"malformed client: {exc}") from exc
    return result


def identifier_of(protocol: str, client: Client) -> str:
    """Return the protocol identifier of a client.

    Trojan clients are identified by ``password``, Shadowsocks clients by
    ``email`` and everything else by ``id``.

    Raises:
        EmptyIdentifier: If the selected field is empty.
    """
    field = client_type(protocol).key_field
    value = str(getattr(client, field, "") or "")
    if not value:
        raise EmptyIdentifier(protocol, field)
    return value


def check_identifiers(protocol: str, clients: Iterable[Client]) -> None:
    """Ensure every client has an identifier and no two share one.

    Raises:
        EmptyIdentifier: A client has no identifier.
        DuplicateIdentifier: Two clients share an identifier.
    """
    seen: set[str] = set()
    for client in clients:
        identifier = identifier_of(protocol, client)
        if identifier in seen:
            raise DuplicateIdentifier(identifier)
        seen.add(identifier)
