#!/usr/bin/env python3
"""
Low Credit Monitor
Finds users whose balance dropped to the low-credit threshold and notifies them.
"""

import html
import json
import time
import argparse
import sqlite3
import smtplib
import requests
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Optional, Tuple

from deepterm_api import settings
from deepterm_api.credit_config import CREDIT_CONFIG, CREDIT_COSTS
from deepterm_api.database import get_db, init_db

CONFIG_PATH = settings.DATA_DIR / "alerts.json"

DEFAULT_CONFIG = {
    "threshold": CREDIT_CONFIG["low_credit_threshold"],
    "dashboard_url": "/dashboard/settings/credits",
    "channels": {
        "email": {"enabled": False},
        "webhook": {"enabled": False},
        "discord": {"enabled": False}
    }
}

def init_alert_db():
    """Initialize alert tracking tables next to the service tables."""
    init_db()
    conn = get_db()
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS low_credit_alert_state (
            user_id INTEGER PRIMARY KEY,
            last_balance INTEGER,
            alert_count INTEGER DEFAULT 0,
            first_alert_at TIMESTAMP,
            last_alert_at TIMESTAMP,
            last_alert_day TEXT
        )
    ''')

    conn.commit()
    conn.close()

def load_config() -> Dict:
    """Load alert configuration, writing the default on first run."""
    if not CONFIG_PATH.exists():
        with open(CONFIG_PATH, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        print(f"Created default config at {CONFIG_PATH}")
        return json.loads(json.dumps(DEFAULT_CONFIG))

    with open(CONFIG_PATH) as f:
        config = json.load(f)
    return dict(DEFAULT_CONFIG, **config)

def find_low_balance_users(threshold: int, conn: sqlite3.Connection) -> List[Dict]:
    """Active users at or below the threshold that were not alerted today."""
    today = datetime.utcnow().strftime('%Y-%m-%d')
    cursor = conn.cursor()
    cursor.execute('''
        SELECT u.id AS user_id, u.email, u.first_name, u.tier, c.balance
        FROM user_credits c
        JOIN users u ON u.id = c.user_id
        LEFT JOIN low_credit_alert_state s ON s.user_id = c.user_id
        WHERE u.is_active = 1 AND c.balance <= ?
          AND (s.last_alert_day IS NULL OR s.last_alert_day < ?)
        ORDER BY c.balance ASC, u.id ASC
    ''', (threshold, today))
    return [dict(row) for row in cursor.fetchall()]

def cheapest_actions(balance: int) -> List[str]:
    return sorted(action for action, cost in CREDIT_COSTS.items() if cost <= balance)

def send_email_alert(to_address: str, subject: str, body: str, html_body: str, config: Dict) -> bool:
    """Send email alert to the user."""
    email_config = config.get('channels', {}).get('email', {})
    if not email_config.get('enabled'):
        return False

    msg = MIMEMultipart('alternative')
    msg['Subject'] = subject
    msg['From'] = email_config.get('username', 'billing@deepterm.app')
    msg['To'] = to_address

    msg.attach(MIMEText(body, 'plain'))
    msg.attach(MIMEText(html_body, 'html'))

    try:
        with smtplib.SMTP(email_config['smtp_host'], email_config['smtp_port']) as server:
            server.starttls()
            server.login(email_config['username'], email_config['password'])
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        print(f"Email send failed: {e}")
        return False
    return True

def send_webhook_alert(payload: Dict, config: Dict) -> bool:
    """Send webhook alert."""
    webhook_config = config.get('channels', {}).get('webhook', {})
    if not webhook_config.get('enabled'):
        return False

    try:
        response = requests.post(
            webhook_config['url'],
            json=payload,
            headers=webhook_config.get('headers', {}),
            timeout=30
        )
    except requests.RequestException as e:
        print(f"Webhook send failed: {e}")
        return False
    return response.status_code < 400

def send_discord_alert(message: str, embed: Dict, config: Dict) -> bool:
    """Send Discord webhook alert."""
    discord_config = config.get('channels', {}).get('discord', {})
    if not discord_config.get('enabled'):
        return False

    try:
        response = requests.post(
            discord_config['webhook_url'],
            json={"content": message, "embeds": [embed]},
            timeout=30
        )
    except requests.RequestException as e:
        print(f"Discord send failed: {e}")
        return False
    return response.status_code < 400

def record_alert(user_id: int, balance: int, conn: sqlite3.Connection):
    """Remember that the user was alerted today."""
    now = datetime.utcnow()
    conn.execute('''
        INSERT INTO low_credit_alert_state
            (user_id, last_balance, alert_count, first_alert_at, last_alert_at, last_alert_day)
        VALUES (?, ?, 1, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            last_balance = excluded.last_balance,
            alert_count = alert_count + 1,
            last_alert_at = excluded.last_alert_at,
            last_alert_day = excluded.last_alert_day
    ''', (user_id, balance, now.isoformat(), now.isoformat(), now.strftime('%Y-%m-%d')))

def send_alert(user: Dict, config: Dict) -> List[Tuple[str, bool]]:
    """Send one low-credit alert through all configured channels."""
    balance = user['balance']
    name = user.get('first_name') or user['email']
    affordable = cheapest_actions(balance)
    dashboard_url = config.get('dashboard_url', DEFAULT_CONFIG['dashboard_url'])
    subject = f"Deep Terminal: {balance} credits left"

    body = f"""
Hi {name},

Your Deep Terminal balance is down to {balance} credits.
{'You can still run: ' + ', '.join(affordable) if affordable else 'Metered features are paused until you top up.'}

Top up: {dashboard_url}

Time: {datetime.utcnow().isoformat()}
"""

    html_body = f"""
<div style="font-family: sans-serif; max-width: 600px; padding: 20px;">
    <h2 style="color: {'#ff3864' if balance == 0 else '#ff9f1c'};">Low credit balance</h2>
    <p style="font-size: 18px;">Hi {html.escape(name)}, you have <strong>{balance}</strong> credits left.</p>
    <p><a href="{dashboard_url}">Buy more credits</a></p>
    <p style="color: #666; font-size: 12px;">
        {datetime.utcnow().strftime('%Y-%m-%d %H:%M UTC')}
    </p>
</div>
"""

    webhook_payload = {
        "alert_type": "low_credits",
        "user_id": user['user_id'],
        "email": user['email'],
        "tier": user['tier'],
        "balance": balance,
        "threshold": config['threshold'],
        "timestamp": datetime.utcnow().isoformat()
    }

    discord_embed = {
        "title": "Low credit balance",
        "description": f"{user['email']} is at {balance} credits",
        "color": 16711680 if balance == 0 else 16753920,
        "fields": [
            {"name": "Tier", "value": user['tier'], "inline": True},
            {"name": "Balance", "value": str(balance), "inline": True}
        ],
        "timestamp": datetime.utcnow().isoformat()
    }

    results = []
    results.append(("email", send_email_alert(user['email'], subject, body, html_body, config)))
    results.append(("webhook", send_webhook_alert(webhook_payload, config)))
    results.append(("discord", send_discord_alert(subject, discord_embed, config)))
    return results

def run_monitor(config: Dict, test_mode: bool = False) -> int:
    """Run a single check. Returns the number of users alerted."""
    conn = get_db()
    try:
        users = find_low_balance_users(int(config['threshold']), conn)

        if test_mode:
            print(f"Test mode: Would alert {len(users)} users")
            for user in users:
                print(f"  - {user['email']}: {user['balance']} credits")
            return 0

        if not users:
            print(f"{datetime.now().isoformat()} - No users at or below {config['threshold']} credits")
            return 0

        print(f"{datetime.now().isoformat()} - {len(users)} low balance users")
        alerted = 0
        for user in users:
            print(f"  Alerting: {user['email']} ({user['balance']} credits)")
            results = send_alert(user, config)
            for channel, success in results:
                status = "ok" if success else "skipped"
                print(f"    {status} {channel}")
            if any(success for _, success in results):
                record_alert(user['user_id'], user['balance'], conn)
                conn.commit()
                alerted += 1
        return alerted
    finally:
        conn.close()

def run_daemon(config: Dict, interval: int = 3600):
    """Run monitoring in a loop."""
    print(f"Starting Low Credit Monitor (interval: {interval}s)")

    while True:
        try:
            run_monitor(config)
        except Exception as e:
            print(f"Monitor error: {e}")

        time.sleep(interval)

def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Deep Terminal Low Credit Monitor')
    parser.add_argument('--once', action='store_true', help='Run a single check and exit')
    parser.add_argument('--interval', type=int, default=3600, help='Check interval in seconds (default: 3600)')
    parser.add_argument('--test', action='store_true', help='List users that would be alerted without sending')

    args = parser.parse_args(argv)

    init_alert_db()
    config = load_config()

    if args.test:
        run_monitor(config, test_mode=True)
        return

    if args.once:
        run_monitor(config)
    else:
        run_daemon(config, args.interval)

if __name__ == "__main__":
    main()
