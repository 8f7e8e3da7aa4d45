"""Outbound mail for CV analysis results.

Providers (EMAIL_PROVIDER env):
  - smtp (default): SMTP_HOST / SMTP_PORT / SMTP_SECURE / SMTP_USER / SMTP_PASS
  - sendgrid: SendGrid SMTP relay, password taken from EMAIL_API_KEY
  - ses, mailgun: not implemented; rejected when the service is constructed
"""
from __future__ import annotations

import html
import logging
import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Callable

from ..core import config
from ..core.errors import EmailConfigurationError, EmailSendError
from ..schemas.submission import AnalysisResult, Improvement, UserData

log = logging.getLogger(__name__)

CONTACT_PHONE = '+1 (555) 123-4567'
BRAND = 'SkillTude'

# blocking socket operations in one delivery: connect, EHLO, STARTTLS, EHLO,
# AUTH, MAIL, RCPT, DATA; each may take up to the transport timeout
SMTP_ROUND_TRIPS = 8


@dataclass
class TransportSettings:
    host: str
    port: int
    secure: bool = False
    user: str = ''
    password: str = ''
    timeout: float = 20.0


@dataclass
class EmailContent:
    to: str
    subject: str
    html: str
    text: str


def transport_settings_for(provider: str) -> TransportSettings:
    smtp = config.smtp_settings()
    if provider == 'smtp':
        return TransportSettings(smtp['host'], smtp['port'], smtp['secure'], smtp['user'], smtp['password'], smtp['timeout'])
    if provider == 'sendgrid':
        key = config.email_api_key()
        if not key:
            raise EmailConfigurationError("SendGrid provider selected but EMAIL_API_KEY is not set")
        return TransportSettings('smtp.sendgrid.net', 587, False, 'apikey', key, smtp['timeout'])
    if provider in ('ses', 'mailgun'):
        raise EmailConfigurationError(f"{provider} provider not yet implemented. Please use smtp or sendgrid.")
    raise EmailConfigurationError(f"Unknown email provider '{provider}'")


class EmailService:
    def __init__(
        self,
        provider: str | None = None,
        settings: TransportSettings | None = None,
        *,
        smtp_factory: Callable[..., smtplib.SMTP] | None = None,
        max_retries: int = 3,
        base_retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        send_deadline: float | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.provider = (provider or config.email_provider()).lower()
        self.settings = settings or transport_settings_for(self.provider)
        self.from_address = config.email_from_address()
        self.from_name = config.email_from_name()
        self._smtp_factory = smtp_factory
        self.max_retries = max(1, max_retries)
        self.base_retry_delay = base_retry_delay
        self._sleep = sleep
        # no new try is started once this many seconds have passed
        self.send_deadline = send_deadline if send_deadline is not None else config.smtp_send_deadline_seconds()
        self._timer = timer
        log.info("email_service_initialized", extra={"category": "email_delivery", "provider": self.provider})

    @property
    def send_budget_seconds(self) -> float:
        """Worst-case wall time of one ``send_cv_analysis`` call."""
        per_try = self.settings.timeout * SMTP_ROUND_TRIPS
        sleeps = sum(self.base_retry_delay * (2 ** n) for n in range(self.max_retries - 1))
        every_try = self.max_retries * per_try + sleeps
        if self.send_deadline:
            # the last try may start just before the deadline
            return min(every_try, self.send_deadline + per_try)
        return every_try

    # --- transport ------------------------------------------------------

    def _open(self) -> smtplib.SMTP:
        s = self.settings
        if self._smtp_factory is not None:
            conn = self._smtp_factory(s.host, s.port, timeout=s.timeout)
        elif s.secure:
            conn = smtplib.SMTP_SSL(s.host, s.port, timeout=s.timeout)
        else:
            conn = smtplib.SMTP(s.host, s.port, timeout=s.timeout)
        try:
            conn.ehlo()
            if not s.secure and conn.has_extn('starttls'):
                conn.starttls()
                conn.ehlo()
            if s.user:
                conn.login(s.user, s.password)
        except Exception:
            _quietly_close(conn)
            raise
        return conn

    def verify_connection(self) -> bool:
        try:
            conn = self._open()
        except Exception as e:
            log.error("email_connection_failed", extra={"category": "email_delivery", "error": str(e)})
            return False
        try:
            code, _ = conn.noop()
            ok = 200 <= code < 300
        except Exception as e:
            log.error("email_connection_failed", extra={"category": "email_delivery", "error": str(e)})
            ok = False
        finally:
            _quietly_close(conn)
        if ok:
            log.info("email_connection_verified", extra={"category": "email_delivery"})
        return ok

    def send_email(self, to: str, subject: str, html_body: str, text_body: str):
        msg = EmailMessage()
        msg['From'] = formataddr((self.from_name, self.from_address))
        msg['To'] = to
        msg['Subject'] = subject
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype='html')
        conn = self._open()
        try:
            conn.send_message(msg)
        finally:
            _quietly_close(conn)

    def _send_with_retry(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        last_error: Exception | None = None
        started = self._timer()
        tries = 0
        for attempt in range(self.max_retries):
            tries += 1
            try:
                self.send_email(to, subject, html_body, text_body)
                if attempt > 0:
                    log.info("email_sent_after_retry", extra={"category": "email_delivery", "attempt": attempt + 1})
                return True
            except Exception as e:
                last_error = e
                log.warning("email_send_attempt_failed", extra={"category": "email_delivery", "attempt": attempt + 1, "error": str(e)})
                if attempt < self.max_retries - 1:
                    # 1s, 2s, 4s ...
                    delay = self.base_retry_delay * (2 ** attempt)
                    if self.send_deadline and self._timer() - started + delay >= self.send_deadline:
                        log.warning("email_send_deadline_reached", extra={"category": "email_delivery", "attempt": attempt + 1})
                        break
                    self._sleep(delay)
        raise EmailSendError(f"Failed to send email to {to}: {last_error}", attempts=tries)

    # --- content --------------------------------------------------------

    def send_cv_analysis(self, recipient: str, analysis: AnalysisResult | dict, user: UserData | dict) -> bool:
        content = self.generate_email_content(analysis, user, recipient)
        return self._send_with_retry(content.to, content.subject, content.html, content.text)

    def generate_email_content(self, analysis: AnalysisResult | dict, user: UserData | dict, recipient: str | None = None) -> EmailContent:
        if not isinstance(analysis, AnalysisResult):
            analysis = AnalysisResult.model_validate(analysis or {})
        if not isinstance(user, UserData):
            user = UserData.model_validate(user)
        score = format_score(analysis.overall_score)
        return EmailContent(
            to=recipient or user.email,
            subject=f"Your CV Analysis Results - {score}/100",
            html=self._render_html(analysis, user),
            text=self._render_text(analysis, user),
        )

    def _render_html(self, analysis: AnalysisResult, user: UserData) -> str:
        e = html.escape
        score = format_score(analysis.overall_score)
        if analysis.strengths:
            strengths = "\n".join(f'<div class="strength-item">{e(s)}</div>' for s in analysis.strengths)
        else:
            strengths = '<div class="strength-item">We\'ll identify your strengths after a more detailed review.</div>'
        if analysis.improvements:
            improvements = "\n".join(_improvement_html(i) for i in analysis.improvements)
        else:
            improvements = '<div class="improvement-item">Great job! No major improvements needed at this time.</div>'
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>Your CV Analysis Results</title>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
    .score-section {{ background: #4F46E5; color: white; padding: 30px; border-radius: 8px; text-align: center; }}
    .score {{ font-size: 48px; font-weight: bold; }}
    .strength-item, .improvement-item {{ background-color: #f8f9fa; padding: 15px; margin: 10px 0; border-left: 4px solid #4F46E5; }}
    .improvement-item {{ border-left-color: #F59E0B; }}
    .improvement-priority {{ font-size: 11px; font-weight: bold; text-transform: uppercase; margin-left: 10px; }}
    .footer {{ text-align: center; margin-top: 40px; color: #6b7280; font-size: 14px; }}
  </style>
</head>
<body>
  <div class="header"><strong>{BRAND}</strong> &middot; Professional CV Analysis</div>
  <p class="greeting">Dear {e(user.first_name)},</p>
  <p>Thank you for submitting your CV for analysis. We've completed a comprehensive review and are excited to share our findings with you.</p>
  <div class="score-section">
    <div>Your CV Score</div>
    <div class="score">{score}/100</div>
    <div class="interpretation">{e(score_interpretation(analysis.overall_score))}</div>
  </div>
  <h2>What You're Doing Well</h2>
  {strengths}
  <h2>Key Improvements to Make</h2>
  {improvements}
  <div class="cta-section">
    <h2>Ready to Take Your CV to the Next Level?</h2>
    <p>Reply to this email or call us at <strong>{CONTACT_PHONE}</strong> to discuss how we can help you create a CV that opens doors to your dream job.</p>
    <p>Limited Time: Mention this analysis for 15% off our CV writing service!</p>
  </div>
  <div class="footer">
    <strong>{BRAND}</strong><br>Email: {e(self.from_address)}<br>Phone: {CONTACT_PHONE}<br>
    You're receiving this email because you submitted your CV for analysis on our website.
  </div>
</body>
</html>"""

    def _render_text(self, analysis: AnalysisResult, user: UserData) -> str:
        score = format_score(analysis.overall_score)
        if analysis.strengths:
            strengths = "\n\n".join(f"{n}. {s}" for n, s in enumerate(analysis.strengths, 1))
        else:
            strengths = "- We'll identify your strengths after a more detailed review."
        if analysis.improvements:
            improvements = "\n\n".join(_improvement_text(n, i) for n, i in enumerate(analysis.improvements, 1))
        else:
            improvements = "- Great job! No major improvements needed at this time."
        rule = "-" * 60
        return "\n".join([
            f"{BRAND.upper()} - Your CV Analysis Results",
            "",
            f"Dear {user.first_name},",
            "",
            "Thank you for submitting your CV for analysis. We've completed a comprehensive review and are excited to share our findings with you.",
            "",
            rule,
            f"YOUR CV SCORE: {score}/100",
            "",
            score_interpretation(analysis.overall_score),
            rule,
            "WHAT YOU'RE DOING WELL",
            "",
            strengths,
            rule,
            "KEY IMPROVEMENTS TO MAKE",
            "",
            improvements,
            rule,
            f"Reply to this email or call us at {CONTACT_PHONE} to discuss how we can help you create a CV that opens doors to your dream job.",
            "Limited Time: Mention this analysis for 15% off our CV writing service!",
            "",
            "Best regards,",
            f"The {BRAND} Team",
            f"Email: {self.from_address}",
            "",
            "You're receiving this email because you submitted your CV for analysis on our website.",
        ])


def format_score(score: float) -> str:
    return str(int(score)) if float(score).is_integer() else f"{score:.1f}"


def score_interpretation(score: float) -> str:
    if score >= 85:
        return 'Excellent! Your CV is well-structured and professional. With a few minor tweaks, it will be ready to impress any hiring manager.'
    if score >= 70:
        return "Good work! Your CV has a solid foundation. The improvements we've identified will help you stand out even more to recruiters."
    if score >= 50:
        return 'Your CV shows potential, but there are several areas that need attention. Implementing our suggestions will significantly improve your chances of getting interviews.'
    return "Your CV needs significant improvements to be competitive. Don't worry - we've identified specific areas to focus on that will make a big difference."


def _improvement_html(item: Improvement) -> str:
    e = html.escape
    example = f'<div class="improvement-example">Example: {e(item.example)}</div>' if item.example else ''
    return (
        '<div class="improvement-item">'
        f'<div class="improvement-category">{e(item.category)}'
        f'<span class="improvement-priority priority-{item.priority}">{item.priority}</span></div>'
        f'<div><strong>{e(item.issue)}</strong></div>'
        f'<div class="improvement-suggestion">{e(item.suggestion)}</div>'
        f'{example}</div>'
    )


def _improvement_text(n: int, item: Improvement) -> str:
    text = f"{n}. {item.category.upper()} [{item.priority.upper()} PRIORITY]\n   Issue: {item.issue}\n   Suggestion: {item.suggestion}"
    if item.example:
        text += f"\n   Example: {item.example}"
    return text


def _quietly_close(conn):
    try:
        conn.quit()
    except Exception:
        try:
            conn.close()
        except Exception:
            log.debug("smtp_close_failed")
