from enum import Enum, IntEnum


MAGIC = b"FITC"
HEADER_FORMAT = "!4s B 32s I"
HEADER_SIZE = 41
HMAC_SIZE = 32
NODE_ID_SIZE = 32
MAX_PAYLOAD_SIZE = 1 << 20

CONTENT_TOPIC = "/fitconnect/1/chat/proto"
STORE_PAGE_SIZE = 25
MAX_STORE_PAGE_SIZE = 100
MAX_STORED_MESSAGES = 1000

DEFAULT_RELAY_HOST = "127.0.0.1"
DEFAULT_RELAY_PORT = 7777
DEFAULT_HMAC_KEY = b"fitchat-dev-network-key-change-me"
DEFAULT_PEER_TIMEOUT_SECONDS = 10.0
DEFAULT_PUBLISH_TIMEOUT_SECONDS = 5.0
REQUEST_TIMEOUT_SECONDS = 10.0

ACK_OK = 0x00
ACK_ERROR = 0x01


class PacketType(IntEnum):
    HELLO = 0x01
    HELLO_REPLY = 0x02
    SUBSCRIBE = 0x03
    UNSUBSCRIBE = 0x04
    PUBLISH = 0x05
    MESSAGE = 0x06
    STORE_QUERY = 0x07
    STORE_PAGE = 0x08
    ACK = 0x09


class Protocol(str, Enum):
    """Capabilities a peer can offer on the messaging network."""

    STORE = "store"
    FILTER = "filter"
    LIGHTPUSH = "lightpush"


REQUIRED_PROTOCOLS = (Protocol.STORE, Protocol.FILTER, Protocol.LIGHTPUSH)
