"""
AI stock reports.

A report row moves pending -> generating -> completed or failed. Credits are
charged when the row is created and refunded when generation fails, either
directly or through stale-report recovery. Completed reports stay active for
five hours and are returned instead of starting a new generation.

Model output is streamed and saved as it arrives, so a long generation keeps
refreshing ``updated_at`` and is not mistaken for a stale one.
"""

import json
import logging
import os
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from deepterm_api import market_data
from deepterm_api.database import db_time, dumps_metadata, get_db, row_to_dict
from deepterm_api.ledger import refund_credits
from deepterm_api.settings import DEFAULT_OPENROUTER_MODEL, OPENROUTER_ENV, public_app_url

logger = logging.getLogger(__name__)

OPENROUTER_API_URL = "https://openrouter.ai/api/v1"
FALLBACK_MODEL = "openai/gpt-4o"

REPORT_TYPES = ["retail", "pro", "personalized"]
REPORT_TTL = timedelta(hours=5)
STALE_AFTER = timedelta(minutes=2)
RECOVERABLE_CONTENT_LENGTH = 500
PROGRESS_SAVE_CHARS = 500
IN_PROGRESS_STATUSES = ("pending", "generating")

class ReportError(Exception):
    pass

class OpenRouterError(ReportError):
    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

class OpenRouterClient:
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout: int = 180):
        self.api_key = api_key if api_key is not None else os.getenv(OPENROUTER_ENV["api_key"], "")
        self.model = model or os.getenv(OPENROUTER_ENV["model"]) or DEFAULT_OPENROUTER_MODEL
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": public_app_url() or "https://deepterm.com",
            "X-Title": "Deep Terminal - Stock Analysis",
        }

    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: int = 8000,
        temperature: float = 0.3,
        on_progress: Optional[Callable[[str], None]] = None
    ) -> str:
        """Stream a completion and return the full text.

        ``on_progress`` receives the text so far on the first chunk and then
        every PROGRESS_SAVE_CHARS characters.
        """
        if not self.api_key:
            raise OpenRouterError("OPENROUTER_API_KEY is not configured", status_code=401)
        payload = {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
        }
        try:
            response = requests.post(
                f"{OPENROUTER_API_URL}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise OpenRouterError(f"OpenRouter request failed: {exc}", retryable=True)

        try:
            if response.status_code >= 400:
                try:
                    message = (response.json().get("error") or {}).get("message") or response.reason
                except ValueError:
                    message = response.reason
                raise OpenRouterError(
                    f"OpenRouter API error: {response.status_code} - {message}",
                    status_code=response.status_code,
                    retryable=response.status_code >= 500 or response.status_code == 429,
                )
            content = self._read_stream(response, on_progress)
        finally:
            response.close()

        if not content:
            raise OpenRouterError("Invalid response from OpenRouter API")
        return content

    def _read_stream(self, response, on_progress: Optional[Callable[[str], None]]) -> str:
        parts: List[str] = []
        length = 0
        saved = 0
        try:
            for line in response.iter_lines():
                if isinstance(line, bytes):
                    line = line.decode("utf-8", errors="replace")
                # Blank keep-alives and ": OPENROUTER PROCESSING" comments carry no data.
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except ValueError:
                    continue
                error = chunk.get("error")
                if error:
                    message = error.get("message") if isinstance(error, dict) else error
                    raise OpenRouterError(f"OpenRouter stream error: {message}", retryable=True)
                choices = chunk.get("choices") or []
                delta = (choices[0].get("delta") or {}).get("content") if choices else None
                if not delta:
                    continue
                parts.append(delta)
                length += len(delta)
                if on_progress and (saved == 0 or length - saved >= PROGRESS_SAVE_CHARS):
                    on_progress("".join(parts))
                    saved = length
        except requests.RequestException as exc:
            raise OpenRouterError(f"OpenRouter stream interrupted: {exc}", retryable=True)
        return "".join(parts)

    def chat_with_fallback(self, messages: List[Dict[str, str]], **kwargs) -> str:
        try:
            return self.chat_completion(messages, **kwargs)
        except OpenRouterError as exc:
            if not exc.retryable:
                raise
            logger.warning("Primary model %s failed (%s), falling back to %s", self.model, exc, FALLBACK_MODEL)
            return self.chat_completion(messages, **dict(kwargs, model=FALLBACK_MODEL))

REPORT_SECTIONS = {
    "retail": [
        "Company overview in plain language",
        "What the key numbers say",
        "Strengths and risks",
        "Valuation in context",
        "Summary for a long-term investor",
    ],
    "pro": [
        "Executive summary with bull and bear cases",
        "Business analysis and competitive positioning",
        "Financial performance",
        "Valuation analysis (multiples and relative valuation)",
        "Risk assessment",
        "Technical and momentum picture",
        "Investment conclusion with catalysts and scenarios",
    ],
    "personalized": [
        "Company overview",
        "Fit with the investor's risk tolerance",
        "Fit with the investor's horizon",
        "Key risks for this investor",
        "Educational next steps",
    ],
}

def build_report_prompt(report_type: str, snapshot: Dict[str, Any], profile: Optional[Dict[str, Any]] = None) -> str:
    if report_type == "pro":
        persona = ("You are a CFA charterholder and senior equity research analyst writing an internal "
                   "investment memo for an investment committee.")
    else:
        persona = ("You are an experienced equity analyst explaining a stock to an individual investor "
                   "in clear, jargon-light English.")

    lines = [
        persona,
        "",
        "Use ONLY the numbers present in the JSON below. Never invent, estimate or approximate figures "
        "that are not in the data; if a metric is missing, say so.",
        "Do not give personalized investment advice or explicit buy/sell recommendations.",
        "",
        "Stock data:",
        json.dumps(snapshot, indent=2, default=str),
    ]
    if report_type == "personalized" and profile:
        lines += [
            "",
            "Investor profile:",
            json.dumps(profile, indent=2),
        ]
    lines += ["", "Write a structured markdown report with these sections:"]
    lines += [f"{index}. {section}" for index, section in enumerate(REPORT_SECTIONS[report_type], start=1)]
    return "\n".join(lines)

def serialize_report(report: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "report_id": report["id"],
        "symbol": report["symbol"],
        "company_name": report.get("company_name"),
        "type": report["report_type"],
        "status": report["status"],
        "content": report.get("content") or "",
        "error": report.get("error"),
        "credits_charged": report.get("credits_charged", 0),
        "metadata": report.get("metadata") or {},
        "created_at": report["created_at"],
        "updated_at": report["updated_at"],
        "expires_at": report.get("expires_at"),
    }

def get_report(report_id: int, *, conn: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute("SELECT * FROM ai_reports WHERE id = ?", (report_id,))
    return row_to_dict(cursor.fetchone())

def find_in_progress_report(
    user_id: int,
    symbol: str,
    report_type: str,
    *,
    conn: sqlite3.Connection
) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT * FROM ai_reports
        WHERE user_id = ? AND symbol = ? AND report_type = ? AND status IN ('pending', 'generating')
        ORDER BY created_at DESC, id DESC LIMIT 1
        ''',
        (user_id, symbol, report_type)
    )
    return row_to_dict(cursor.fetchone())

def find_active_report(
    user_id: int,
    symbol: str,
    report_type: str,
    *,
    conn: sqlite3.Connection
) -> Optional[Dict[str, Any]]:
    cursor = conn.cursor()
    cursor.execute(
        '''
        SELECT * FROM ai_reports
        WHERE user_id = ? AND symbol = ? AND report_type = ? AND status = 'completed'
          AND (expires_at IS NULL OR expires_at > ?)
        ORDER BY created_at DESC, id DESC LIMIT 1
        ''',
        (user_id, symbol, report_type, db_time())
    )
    return row_to_dict(cursor.fetchone())

def find_reusable_report(
    user_id: int,
    symbol: str,
    report_type: str,
    *,
    conn: sqlite3.Connection
) -> Optional[Dict[str, Any]]:
    return (find_in_progress_report(user_id, symbol, report_type, conn=conn)
            or find_active_report(user_id, symbol, report_type, conn=conn))

def create_report(
    user_id: int,
    symbol: str,
    report_type: str,
    credits_charged: int,
    *,
    conn: sqlite3.Connection
) -> Dict[str, Any]:
    now_text = db_time()
    cursor = conn.cursor()
    cursor.execute(
        '''
        INSERT INTO ai_reports (user_id, symbol, report_type, status, credits_charged, created_at, updated_at)
        VALUES (?, ?, ?, 'pending', ?, ?, ?)
        ''',
        (user_id, symbol, report_type, credits_charged, now_text, now_text)
    )
    return get_report(cursor.lastrowid, conn=conn)

def fail_report(report: Dict[str, Any], error: str, *, conn: sqlite3.Connection) -> bool:
    """Mark an in-progress report failed and refund it. Returns False if it already left progress."""
    cursor = conn.cursor()
    cursor.execute(
        '''
        UPDATE ai_reports SET status = 'failed', error = ?, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'generating')
        ''',
        (error, db_time(), report["id"])
    )
    if cursor.rowcount == 0:
        return False
    if report.get("credits_charged", 0) > 0:
        refund_credits(
            report["user_id"],
            report["credits_charged"],
            f"AI report for {report['symbol']} failed",
            conn=conn,
            metadata={"report_id": report["id"], "symbol": report["symbol"]},
        )
    return True

def recover_stale_reports(*, conn: sqlite3.Connection, user_id: Optional[int] = None) -> Dict[str, int]:
    """Settle reports with no progress for two minutes. The caller commits."""
    cutoff = db_time(datetime.utcnow() - STALE_AFTER)
    query = "SELECT * FROM ai_reports WHERE status IN ('pending', 'generating') AND updated_at < ?"
    params: List[Any] = [cutoff]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)

    cursor = conn.cursor()
    cursor.execute(query, params)
    stale = [row_to_dict(row) for row in cursor.fetchall()]
    recovered = {"completed": 0, "failed": 0}
    for report in stale:
        content = report.get("content") or ""
        if len(content) > RECOVERABLE_CONTENT_LENGTH:
            now = datetime.utcnow()
            cursor.execute(
                '''
                UPDATE ai_reports SET status = 'completed', expires_at = ?, updated_at = ?
                WHERE id = ? AND status IN ('pending', 'generating')
                ''',
                (db_time(now + REPORT_TTL), db_time(now), report["id"])
            )
            recovered["completed"] += cursor.rowcount
        elif fail_report(report, "Generation timed out", conn=conn):
            recovered["failed"] += 1

    if stale:
        logger.info("Recovered stale reports: %s", recovered)
    return recovered

def get_report_status(user_id: int, symbol: str, report_type: str, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    recover_stale_reports(conn=conn, user_id=user_id)
    report = find_reusable_report(user_id, symbol, report_type, conn=conn)
    if not report:
        return {"exists": False, "status": None, "report_id": None}
    return dict(serialize_report(report), exists=True)

def _investor_profile(user_id: int, *, conn: sqlite3.Connection) -> Dict[str, Any]:
    cursor = conn.cursor()
    cursor.execute(
        "SELECT risk_tolerance, investment_horizon, investment_experience FROM users WHERE id = ?",
        (user_id,)
    )
    row = cursor.fetchone()
    return dict(row) if row else {}

def _set_generating(report_id: int) -> Optional[Dict[str, Any]]:
    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE ai_reports SET status = 'generating', updated_at = ? WHERE id = ? AND status = 'pending'",
            (db_time(), report_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
        return get_report(report_id, conn=conn)
    finally:
        conn.close()

def _save_progress(report_id: int, content: str) -> None:
    """Store partial output and refresh ``updated_at`` so the row is not treated as stale."""
    conn = get_db()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE ai_reports SET content = ?, updated_at = ? WHERE id = ? AND status = 'generating'",
            (content, db_time(), report_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            logger.warning("Report %s left generation while still streaming", report_id)
    finally:
        conn.close()

def generate_report(report_id: int, client: Optional[OpenRouterClient] = None) -> None:
    """Background task: build the prompt, stream the model output and settle the row."""
    report = _set_generating(report_id)
    if not report:
        logger.info("Report %s is no longer pending, skipping generation", report_id)
        return

    client = client or OpenRouterClient()
    symbol = report["symbol"]
    try:
        snapshot = market_data.get_company_snapshot(symbol)
        profile = None
        if report["report_type"] == "personalized":
            conn = get_db()
            try:
                profile = _investor_profile(report["user_id"], conn=conn)
            finally:
                conn.close()
        prompt = build_report_prompt(report["report_type"], snapshot, profile)
        content = client.chat_with_fallback(
            [{"role": "user", "content": prompt}],
            on_progress=lambda partial: _save_progress(report_id, partial),
        )
    except (market_data.MarketDataError, ReportError) as exc:
        logger.error("Report %s for %s failed: %s", report_id, symbol, exc)
        conn = get_db()
        try:
            fail_report(report, str(exc), conn=conn)
            conn.commit()
        finally:
            conn.close()
        return

    now = datetime.utcnow()
    company_name = snapshot.get("long_name") or snapshot.get("short_name") or symbol
    conn = get_db()
    try:
        # Stale recovery may already have completed the row from partial content.
        cursor = conn.cursor()
        cursor.execute(
            '''
            UPDATE ai_reports
            SET status = 'completed', content = ?, company_name = ?, metadata = ?, expires_at = ?, updated_at = ?
            WHERE id = ? AND status IN ('generating', 'completed')
            ''',
            (content, company_name, dumps_metadata({"model": client.model, "price": snapshot.get("price")}),
             db_time(now + REPORT_TTL), db_time(now), report_id)
        )
        conn.commit()
    finally:
        conn.close()
    if cursor.rowcount == 0:
        logger.warning("Report %s was settled as failed before generation finished", report_id)
        return
    logger.info("Report %s for %s completed (%d chars)", report_id, symbol, len(content))
