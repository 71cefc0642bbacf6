"""Outgoing e-mail: factor proposals, price error reports, change digests.

Messages are HTML rendered from templates in ``templates/email`` and sent
over SMTP (STARTTLS unless SMTP_SECURE asks for implicit TLS).
"""

import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import ConfigurationError, ValidationError
from .error_logging import log_mail_error
from .logging_config import log_event

__all__ = [
    "Mailer",
    "find_changes",
    "summarize_value",
    "notify_safely",
    "MAX_CHANGE_ROWS",
]

logger = logging.getLogger(__name__)

MAX_CHANGE_ROWS = 100

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates" / "email")),
    autoescape=select_autoescape(["html"]),
)

FIELD_LABELS = {
    "name": "Nazwa",
    "previousName": "Poprzednia nazwa",
    "image": "Zdjęcie",
    "code": "Kod",
    "discount": "Rabat",
    "material": "Materiał",
    "dimension": "Wymiar",
    "price": "Cena",
    "prices": "Ceny",
    "description": "Opis",
    "priceFactor": "Faktor",
    "title": "Tytuł",
}


def summarize_value(value: Any) -> str:
    """Short display form of a JSON value for the change table."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value[:50] + "..." if len(value) > 50 else value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return f"[Array: {len(value)} items]"
    if isinstance(value, dict):
        name = value.get("name") or value.get("MODEL") or value.get("code")
        return f"{{{name}}}" if name else "{Object}"
    return str(value)


def _same_kind(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return type(a) is type(b)


def find_changes(old: Any, new: Any, path: str = "") -> List[Dict[str, Any]]:
    """Structural diff of two JSON documents.

    Paths use dots for keys and ``[i]`` for list positions, e.g.
    ``categories.Stoły.TRIM.prices.Grupa I``.
    """
    if old == new and _same_kind(old, new):
        return []

    if isinstance(old, dict) and isinstance(new, dict):
        changes: List[Dict[str, Any]] = []
        for key in list(old) + [k for k in new if k not in old]:
            child = f"{path}.{key}" if path else str(key)
            if key not in old:
                changes.append({"type": "added", "path": child, "newValue": summarize_value(new[key])})
            elif key not in new:
                changes.append({"type": "removed", "path": child, "oldValue": summarize_value(old[key])})
            else:
                changes.extend(find_changes(old[key], new[key], child))
        return changes

    if isinstance(old, list) and isinstance(new, list):
        changes = []
        for i in range(max(len(old), len(new))):
            child = f"{path}[{i}]"
            if i >= len(old):
                changes.append({"type": "added", "path": child, "newValue": summarize_value(new[i])})
            elif i >= len(new):
                changes.append({"type": "removed", "path": child, "oldValue": summarize_value(old[i])})
            else:
                changes.extend(find_changes(old[i], new[i], child))
        return changes

    return [{"type": "modified", "path": path or "root", "oldValue": old, "newValue": new}]


def _field_label(path: str) -> str:
    last = path.rsplit(".", 1)[-1]
    if "[" in last:
        last = last.split("[", 1)[0]
    if ".prices." in f".{path}":
        return f"Cena {last}"
    return FIELD_LABELS.get(last, last)


def notify_safely(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a notification; failures are logged, never raised."""
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.warning(f"Notification {getattr(func, '__name__', func)} failed: {e}")
        log_mail_error(str(e), operation=getattr(func, "__name__", None))
        return None


class Mailer:
    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
        secure: bool = False,
        sender: Optional[str] = None,
        notification_email: Optional[str] = None,
        report_email: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.secure = secure
        self.sender = sender or user
        self.notification_email = notification_email
        self.report_email = report_email or notification_email

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "Mailer":
        return cls(
            host=config.get("SMTP_HOST", "smtp.gmail.com"),
            port=int(config.get("SMTP_PORT", 587)),
            user=config.get("SMTP_USER"),
            password=config.get("SMTP_PASS"),
            secure=bool(config.get("SMTP_SECURE")),
            sender=config.get("SMTP_FROM"),
            notification_email=config.get("NOTIFICATION_EMAIL"),
            report_email=config.get("REPORT_EMAIL"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def send(self, to: str, subject: str, html: str, reply_to: Optional[str] = None) -> None:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender or ""
        msg["To"] = to
        msg["Subject"] = subject
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(html, "html", "utf-8"))

        smtp_class = smtplib.SMTP_SSL if self.secure else smtplib.SMTP
        with smtp_class(self.host, self.port, timeout=30) as server:
            if not self.secure:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)

        log_event("mail_sent", {"to": to, "subject": subject})

    def send_factor_proposal(
        self,
        producer_name: str,
        current_factor: Any,
        new_factor: Any,
        percent_change: Optional[float] = None,
    ) -> None:
        if not producer_name or new_factor is None:
            raise ValidationError("Missing required data (producerName, newFactor)")
        if not self.notification_email:
            raise ConfigurationError("Notification e-mail address is not configured")

        html = _env.get_template("factor_change.html").render(
            producer_name=producer_name,
            current_factor=current_factor,
            new_factor=new_factor,
            percent_change=percent_change,
        )
        self.send(self.notification_email, f"Zmiana faktora dla {producer_name}", html)

    def send_price_error_report(
        self,
        producer_name: str,
        product_name: str,
        description: str,
        contact_email: Optional[str] = None,
    ) -> None:
        if not producer_name or not product_name or not description:
            raise ValidationError("Missing required fields (producerName, productName, description)")
        if not self.report_email:
            raise ConfigurationError("Report e-mail address is not configured")

        html = _env.get_template("price_report.html").render(
            producer_name=producer_name,
            product_name=product_name,
            description=description,
            contact_email=contact_email,
            reported_at=datetime.now().strftime("%d.%m.%Y %H:%M"),
        )
        self.send(
            self.report_email,
            f"Zgłoszenie błędu w cenie: {producer_name} - {product_name}",
            html,
            reply_to=contact_email or None,
        )

    def send_producer_update(self, producer_name: str, factor_change: Dict[str, Any]) -> bool:
        if not self.configured:
            return False
        html = _env.get_template("producer_update.html").render(
            producer_name=producer_name,
            factor_change=factor_change,
        )
        self.send(self.notification_email or self.user, f"Aktualizacja producenta: {producer_name}", html)
        return True

    def send_changes_notification(self, producer_name: str, old_data: Any, new_data: Any) -> bool:
        """Mail a table of what changed in a catalog; skipped when nothing did."""
        if not self.configured:
            return False
        changes = [c for c in find_changes(old_data, new_data) if "priceGroups" not in c["path"]]
        if not changes:
            return False

        rows = [
            {
                **change,
                "label": _field_label(change["path"]),
                "old": summarize_value(change.get("oldValue")) if "oldValue" in change else "",
                "new": summarize_value(change.get("newValue")) if "newValue" in change else "",
            }
            for change in changes[:MAX_CHANGE_ROWS]
        ]
        html = _env.get_template("changes.html").render(
            producer_name=producer_name,
            rows=rows,
            total=len(changes),
            hidden=max(0, len(changes) - MAX_CHANGE_ROWS),
            generated_at=datetime.now().strftime("%d.%m.%Y %H:%M"),
        )
        self.send(
            self.notification_email or self.user,
            f"Zmiany w cenniku: {producer_name} ({len(changes)})",
            html,
        )
        return True
