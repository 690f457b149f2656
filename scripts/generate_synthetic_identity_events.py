#!/usr/bin/env python3
"""
Synthetic Identity Traffic Generator

Posts realistic identity journeys to a running Identity Graph API:
1. Anonymous page views (internal and analytics.js shapes)
2. Device fingerprint observations before login
3. A second anonymous session on the same device
4. Identify calls with email and/or phone, phones in varied renderings
5. Returning visitors identifying with the same email on a new device

Usage:
    python scripts/generate_synthetic_identity_events.py --users 20
    python scripts/generate_synthetic_identity_events.py --dry-run
"""

import argparse
import json
import os
import random
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import requests

API_URL = os.getenv("IDENTITY_API_URL", "http://localhost:8000")
API_KEY = os.getenv("EVENTS_API_KEY", "")
BATCH_SIZE = 50

PAGES = ["/", "/courses", "/courses/intro-to-sql", "/pricing", "/about", "/checkout"]

PHONE_RENDERINGS = [
    lambda area, mid, last: f"+1 ({area}) {mid}-{last}",
    lambda area, mid, last: f"1{area}{mid}{last}",
    lambda area, mid, last: f"{area}.{mid}.{last}",
    lambda area, mid, last: f"+1-{area}-{mid}-{last}",
]


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class IdentityTrafficGenerator:
    def __init__(self, users: int, seed: int = None):
        self.random = random.Random(seed)
        self.users = [self._make_user(i) for i in range(users)]
        self.session = requests.Session()
        if API_KEY:
            self.session.headers["x-events-api-key"] = API_KEY

    def _make_user(self, index: int) -> Dict:
        area = self.random.randint(201, 989)
        mid = self.random.randint(200, 999)
        last = self.random.randint(1000, 9999)
        return {
            'user_id': f"user_{index:05d}",
            'email': f"learner{index}@example.com" if self.random.random() < 0.9 else None,
            'phone_parts': (area, mid, last) if self.random.random() < 0.5 else None,
            'device': f"fp_{uuid.uuid4().hex[:16]}",
        }

    def _phone(self, user: Dict):
        if not user['phone_parts']:
            return None
        return self.random.choice(PHONE_RENDERINGS)(*user['phone_parts'])

    def _page_view(self, anonymous_id: str, device: str, at: datetime) -> Dict:
        page = self.random.choice(PAGES)
        if self.random.random() < 0.5:
            return {
                'type': 'page',
                'messageId': str(uuid.uuid4()),
                'anonymousId': anonymous_id,
                'timestamp': iso(at),
                'properties': {'path': page},
                'context': {'device': {'id': device}, 'page': {'path': page}},
            }
        return {
            'event_id': str(uuid.uuid4()),
            'event_name': 'page_view',
            'anonymous_id': anonymous_id,
            'timestamp': iso(at),
            'properties': {'path': page, 'device_fingerprint': device},
        }

    def _identify(self, user: Dict, anonymous_id: str, device: str, at: datetime) -> Dict:
        traits = {}
        if user['email']:
            traits['email'] = user['email'] if self.random.random() < 0.7 else user['email'].upper()
        phone = self._phone(user)
        if phone:
            traits['phone'] = phone
        return {
            'type': 'identify',
            'messageId': str(uuid.uuid4()),
            'anonymousId': anonymous_id,
            'userId': user['user_id'],
            'timestamp': iso(at),
            'traits': traits,
            'context': {'device': {'id': device}},
        }

    def journey(self, user: Dict, start: datetime) -> List[Dict]:
        """Anonymous browsing, a second session, identify, then a new device"""
        events = []
        at = start
        first_anon = f"anon_{uuid.uuid4().hex[:12]}"
        for _ in range(self.random.randint(1, 4)):
            at += timedelta(minutes=self.random.randint(1, 30))
            events.append(self._page_view(first_anon, user['device'], at))

        second_anon = f"anon_{uuid.uuid4().hex[:12]}"
        at += timedelta(hours=self.random.randint(1, 48))
        events.append(self._page_view(second_anon, user['device'], at))

        if user['email'] or user['phone_parts']:
            at += timedelta(minutes=self.random.randint(1, 20))
            events.append(self._identify(user, second_anon, user['device'], at))

            if self.random.random() < 0.3:
                new_device = f"fp_{uuid.uuid4().hex[:16]}"
                third_anon = f"anon_{uuid.uuid4().hex[:12]}"
                at += timedelta(days=self.random.randint(1, 7))
                events.append(self._page_view(third_anon, new_device, at))
                events.append(self._identify(user, third_anon, new_device, at + timedelta(minutes=2)))
        return events

    def generate(self) -> List[Dict]:
        now = datetime.now(timezone.utc)
        events = []
        for user in self.users:
            start = now - timedelta(days=self.random.randint(1, 30))
            events.extend(self.journey(user, start))
        events.sort(key=lambda event: event['timestamp'])
        return events

    def publish(self, events: List[Dict]) -> int:
        inserted = 0
        for offset in range(0, len(events), BATCH_SIZE):
            batch = events[offset:offset + BATCH_SIZE]
            try:
                response = self.session.post(f"{API_URL}/identity/events", json=batch, timeout=10)
            except requests.RequestException as e:
                print(f"Failed to publish batch at offset {offset}: {e}")
                continue
            if response.status_code != 200:
                print(f"Batch at offset {offset} rejected ({response.status_code}): {response.text}")
                continue
            inserted += response.json().get('inserted', 0)
            print(f"  Published {min(offset + BATCH_SIZE, len(events))}/{len(events)} events...")
            time.sleep(0.05)
        return inserted


def main():
    parser = argparse.ArgumentParser(description="Post synthetic identity journeys to the Identity Graph API")
    parser.add_argument("--users", type=int, default=20, help="Number of synthetic users")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible traffic")
    parser.add_argument("--dry-run", action="store_true", help="Print events instead of posting them")
    args = parser.parse_args()

    generator = IdentityTrafficGenerator(args.users, args.seed)
    events = generator.generate()
    print(f"Generated {len(events)} events for {len(generator.users)} users")

    if args.dry_run:
        print(json.dumps(events[:5], indent=2))
        print("Dry run complete - no events published")
        return

    inserted = generator.publish(events)
    print()
    print(f"Inserted {inserted}/{len(events)} events via {API_URL}/identity/events")
    print("Rebuild the marts afterwards: python scripts/rebuild_identity_marts.py")


if __name__ == "__main__":
    main()
