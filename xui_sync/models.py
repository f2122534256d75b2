import json
from typing import Union, TypeAlias, Any, Annotated, ClassVar, Literal, List, Dict

import pydantic
from pydantic import ConfigDict, Field, SerializeAsAny, field_serializer, field_validator

from xui_sync import base_model
from xui_sync.db import ClientTraffic, InboundRecord
from xui_sync.util import make_tag

timestamp: TypeAlias = int
json_string: TypeAlias = str

ProtocolName: TypeAlias = Literal["vmess", "vless", "trojan", "shadowsocks"]


class Client(pydantic.BaseModel):
    """A single client embedded in an inbound's settings document.

    Only the fields shared by every protocol live here; the protocol
    specific payload is declared on the subclasses. Keys this model does
    not know about are kept as extras so a read-modify-write never loses
    them.

    Attributes:
        email: The client's email, the join key to its traffic row.
        enable: Whether the client may connect.
        limit_gb: Traffic quota in bytes (0 = unlimited).
        expiry_time: Expiry in epoch milliseconds (0 = never, negative =
            countdown starting on first traffic).
        reset: Auto-renew period in days (0 = never).
        limit_ip: Maximum simultaneous IPs.
        tg_id: Associated Telegram ID.
        subscription_id: Subscription identifier.
        comment: Admin notes.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    key_field: ClassVar[str] = "id"

    email: str = ""
    enable: bool = True
    limit_gb: Annotated[int, Field(alias="totalGB")] = 0
    expiry_time: Annotated[timestamp, Field(alias="expiryTime")] = 0
    reset: int = 0
    limit_ip: Annotated[int, Field(alias="limitIp")] = 0
    tg_id: Annotated[Union[int, str], Field(alias="tgId")] = ""
    subscription_id: Annotated[str, Field(alias="subId")] = ""
    comment: str = ""

    @property
    def identifier(self) -> str:
        """The value of the field that identifies this client to the engine."""
        return str(getattr(self, self.key_field, "") or "")

    def engine_user(self, cipher: str = "") -> Dict[str, Any]:
        """Build the user attributes for an engine add-user call."""
        return {
            "email": self.email,
            "id": getattr(self, "id", ""),
            "flow": getattr(self, "flow", ""),
            "password": getattr(self, "password", ""),
            "cipher": cipher,
        }


class IdClient(Client):
    """Client of a VMess or VLESS inbound, keyed by its UUID."""
    key_field: ClassVar[str] = "id"

    id: str = ""
    flow: str = ""


class PasswordClient(Client):
    """Client of a Trojan inbound, keyed by its password."""
    key_field: ClassVar[str] = "password"

    password: str = ""
    flow: str = ""


class EmailClient(Client):
    """Client of a Shadowsocks inbound, keyed by its email."""
    key_field: ClassVar[str] = "email"

    password: str = ""
    method: str = ""


class InboundSettings(pydantic.BaseModel):
    """The decoded ``settings`` document of an inbound.

    Attributes:
        clients: The ordered client list, one protocol variant per entry.
    """
    model_config = ConfigDict(extra="allow")

    clients: List[SerializeAsAny[Client]]

    @property
    def cipher(self) -> str:
        """The inbound-wide Shadowsocks method, empty for other protocols."""
        return str((self.model_extra or {}).get("method", ""))


class ClientStats(base_model.BaseModel):
    """Traffic ledger row of one client.

    Attributes:
        id: Internal database ID of the row.
        inboundId: The inbound that hosted the client when the row was made.
        enable: False once the client ran out of quota or time.
        email: The client's email.
        up: Uploaded bytes.
        down: Downloaded bytes.
        expiryTime: Expiry in epoch milliseconds.
        total: Quota in bytes.
        reset: Auto-renew period in days.
    """
    id: int = 0
    inboundId: int = 0
    enable: bool = True
    email: str
    up: int = 0  # bytes
    down: int = 0  # bytes
    expiryTime: timestamp = 0
    total: int = 0
    reset: int = 0

    @classmethod
    def from_record(cls, record: ClientTraffic) -> "ClientStats":
        return cls(
            id=record.id,
            inboundId=record.inbound_id,
            enable=record.enable,
            email=record.email,
            up=record.up,
            down=record.down,
            expiryTime=record.expiry_time,
            total=record.total,
            reset=record.reset,
        )


class Inbound(base_model.BaseModel):
    """An inbound listener with its settings documents.

    Attributes:
        id: The unique identifier for this inbound (0 before it is stored).
        userId: The panel user owning the inbound.
        up: Total uploaded bytes through this inbound.
        down: Total downloaded bytes through this inbound.
        total: Quota in bytes (0 = unlimited).
        remark: Human-readable name.
        enable: Whether the inbound is served by the engine.
        expiryTime: Expiry in epoch milliseconds (0 = never).
        clientStats: Ledger rows; when given to ``add_inbound`` they are
            imported instead of being generated.
        listen: The address the inbound listens on.
        port: The port the inbound listens on.
        protocol: One of vmess, vless, trojan, shadowsocks.
        settings: Settings document holding the client list.
        streamSettings: Transport document.
        tag: Engine tag, always derived from listen and port.
        sniffing: Sniffing document.
    """
    id: int = 0
    userId: int = 0
    up: int = 0  # bytes
    down: int = 0  # bytes
    total: int = 0  # bytes
    remark: str = ""
    enable: bool = True
    expiryTime: timestamp = 0
    clientStats: Union[List[ClientStats], None] = None
    listen: str = ""
    port: int
    protocol: ProtocolName
    settings: Dict[str, Any]
    streamSettings: Dict[str, Any] = Field(default_factory=dict)
    tag: str = ""
    sniffing: Dict[str, Any] = Field(default_factory=dict)

    # noinspection PyNestedDecorators
    @field_validator('settings', 'streamSettings', 'sniffing', mode='before')
    @classmethod
    def parse_json_fields(cls, value: Any) -> Any:
        """Accept the JSON string form stored by the panel."""
        if isinstance(value, (str, bytes)):
            if not value.strip():
                return {}
            return json.loads(value)
        return value

    @field_serializer("settings", "streamSettings", "sniffing")
    def stringify_json_fields(self, value: Dict[str, Any]) -> str:
        """Serialize documents back to JSON strings, the way they are stored."""
        return json.dumps(value, ensure_ascii=False)

    @property
    def derived_tag(self) -> str:
        return make_tag(self.listen, self.port)

    def apply_to(self, record: InboundRecord, settings: json_string) -> InboundRecord:
        """Copy every mutable field onto a stored record.

        Args:
            record: The record to overwrite.
            settings: The already validated and encoded settings document.

        Returns:
            The same record, with its tag recomputed.
        """
        record.user_id = self.userId
        record.up = self.up
        record.down = self.down
        record.total = self.total
        record.remark = self.remark
        record.enable = self.enable
        record.expiry_time = self.expiryTime
        record.listen = self.listen
        record.port = self.port
        record.protocol = self.protocol
        record.settings = settings
        record.stream_settings = json.dumps(self.streamSettings, ensure_ascii=False)
        record.sniffing = json.dumps(self.sniffing, ensure_ascii=False)
        record.tag = self.derived_tag
        return record

    @classmethod
    def from_record(cls, record: InboundRecord,
                    stats: List[ClientTraffic] | None = None) -> "Inbound":
        return cls(
            id=record.id,
            userId=record.user_id,
            up=record.up,
            down=record.down,
            total=record.total,
            remark=record.remark,
            enable=record.enable,
            expiryTime=record.expiry_time,
            clientStats=None if stats is None else ClientStats.from_records(stats),
            listen=record.listen,
            port=record.port,
            protocol=record.protocol,
            settings=record.settings,
            streamSettings=record.stream_settings,
            tag=record.tag,
            sniffing=record.sniffing,
        )


class Traffic(base_model.BaseModel):
    """Traffic delta of one inbound or outbound over one accounting interval."""
    tag: str
    up: int = 0
    down: int = 0
    isInbound: bool = True


class ClientTrafficDelta(base_model.BaseModel):
    """Traffic delta of one client over one accounting interval."""
    email: str
    up: int = 0
    down: int = 0
