"""
Telephony provider clients for PSTN call management.

Usage:
    from channels.telephony import TelephonyFactory
    client = TelephonyFactory.create(settings.vonage)
    result = await client.initiate_call(to="+15551234567", answer_url=..., event_url=...)
"""
from channels.telephony.vonage_client import VonageClient
from channels.telephony.factory import TelephonyFactory, TelephonyClient

__all__ = ["VonageClient", "TelephonyFactory", "TelephonyClient"]
