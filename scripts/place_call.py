#!/usr/bin/env python3
"""
Place a Twilio call whose audio is transcribed live by the relay.

Usage:
    python scripts/place_call.py +14155550123
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from config import config
from transcript_relay.logging_config import setup_logging
from transcript_relay.telephony import TwilioProvider


def place_call(to_number: str, provider: TwilioProvider) -> int:
    """Start a call and report it. Returns a process exit code."""
    print(f"\nInitiating call to {to_number}...")
    print("Make sure the relay server is reachable at the webhook base URL!\n")

    try:
        call = provider.start_outbound_call(to_number)
    except Exception as e:
        print(f"❌ Error making call: {e}")
        return 1

    print("✅ Call initiated successfully!")
    print(f"   Call SID: {call.id}")
    print(f"   Status: {call.status.value}")
    print(f"   Media stream: {provider.media_stream_url}")
    print(f"\nWatch the dashboard at {config.webhook_base_url} for live transcripts.\n")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Place a live-transcribed test call")
    parser.add_argument("to", help="Phone number to call (E.164, e.g. +1234567890)")
    parser.add_argument("--greeting", type=str, help="Custom greeting")
    parser.add_argument("--listen", type=int, help="Seconds to keep the call open")
    args = parser.parse_args(argv)

    setup_logging(config.log_level, "console")

    missing = config.validate()
    if missing:
        print("❌ Missing required environment variables:")
        for name in missing:
            print(f"   {name}")
        return 1

    if not args.to.startswith("+"):
        print("❌ Phone number must be in E.164 format (+1...)")
        return 1

    provider = TwilioProvider.from_config(config)
    if args.greeting:
        provider.greeting = args.greeting
    if args.listen:
        provider.listen_seconds = args.listen

    return place_call(args.to, provider)


if __name__ == "__main__":
    sys.exit(main())
