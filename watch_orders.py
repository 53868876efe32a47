#!/usr/bin/env python3
"""
Follow a user's order transitions from the SSE stream.

Usage:
    python watch_orders.py user_demo_001
    python watch_orders.py user_demo_001 --pay cart_demo_001

With --pay, a checkout session is created for the cart and signed Stripe
deliveries for it are posted to the webhook endpoint, so the transitions
show up on the stream.
"""
import argparse
import json
import sys
import threading
import time

import requests

from orderflow.config import settings
from orderflow.mocks.payment_gateway import simulate_stripe_payment

BASE_URL = "http://localhost:8000"


def watch_orders(base_url: str, user_id: str, last_sequence: int = 0):
    """Print transitions until the server closes the stream."""

    url = f"{base_url}/api/orders/stream"
    params = {"user_id": user_id, "last_sequence": last_sequence}

    print(f"🔗 Connecting to: {url} (user={user_id})")
    print("=" * 70)

    event_type = None
    try:
        response = requests.get(url, params=params, stream=True, timeout=(5, None))

        if response.status_code != 200:
            print(f"❌ Error: HTTP {response.status_code}")
            print(response.text)
            return

        for line in response.iter_lines():
            if not line:
                continue

            line = line.decode('utf-8')

            if line.startswith(':'):
                continue
            if line.startswith('event:'):
                event_type = line.split(':', 1)[1].strip()
            elif line.startswith('data:'):
                data_json = line.split(':', 1)[1].strip()
                try:
                    data = json.loads(data_json)
                except json.JSONDecodeError:
                    print(f"   Data: {data_json}")
                    continue

                if event_type == 'connected':
                    print(f"✅ Connected ({data.get('connection_id')})")
                elif event_type == 'order_transition':
                    print(
                        f"📦 {data['order_id']} #{data['sequence']}: "
                        f"{data.get('previous_state') or '-'} -> {data['state']} ({data.get('cause')})"
                    )
                elif event_type == 'resync':
                    print(f"⚠️  Fell behind, reconnect with: {data.get('acknowledged')}")

        print("=" * 70)
        print("Stream closed by server")

    except requests.exceptions.ConnectionError:
        print("❌ Connection error - is the server running?")
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")


def pay_for_cart(base_url: str, user_id: str, cart_id: str, payment_token: str):
    response = requests.post(
        f"{base_url}/api/checkout/sessions",
        json={"user_id": user_id, "cart_id": cart_id},
        timeout=10,
    )
    if response.status_code != 201:
        print(f"❌ Checkout failed: HTTP {response.status_code} {response.text}")
        return

    token = response.json()
    print(f"🛒 Session {token['session_id']} for order {token['order_id']} ({token['amount_cents']} {token['currency']})")

    deliveries = simulate_stripe_payment(
        token["session_id"], token["amount_cents"], settings.stripe_webhook_secret, payment_token
    )
    for body, headers in deliveries:
        time.sleep(1)
        result = requests.post(f"{base_url}/api/webhooks/stripe", data=body, headers=headers, timeout=10)
        print(f"💳 Webhook -> HTTP {result.status_code} {result.json().get('outcome')}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Follow order transitions for a user")
    parser.add_argument("user_id")
    parser.add_argument("--last-sequence", type=int, default=0)
    parser.add_argument("--pay", metavar="CART_ID", help="Check out and pay for this cart while watching")
    parser.add_argument("--token", default="tok_visa", help="Payment token (tok_decline to fail)")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    if args.pay:
        threading.Timer(1.0, pay_for_cart, args=(args.base_url, args.user_id, args.pay, args.token)).start()

    watch_orders(args.base_url, args.user_id, args.last_sequence)
    sys.exit(0)
