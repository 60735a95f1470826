from enum import Enum


class MessageSource(str, Enum):
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    WIDGET = "widget"


# Sources delivered through the Brevo conversations aggregator
AGGREGATOR_SOURCES = (MessageSource.WHATSAPP, MessageSource.INSTAGRAM, MessageSource.WIDGET)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    AUDIO = "audio"


class ResponseMode(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
