"""
Messaging gateways for outbound lead SMS.
"""

from .base import ChannelMessage, ChannelResponse, LoggingGateway, MessagingGateway
from .sms import TwilioSMSGateway

__all__ = [
    "ChannelMessage",
    "ChannelResponse",
    "LoggingGateway",
    "MessagingGateway",
    "TwilioSMSGateway",
]
