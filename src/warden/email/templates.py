"""
Email templates for Warden account notifications.

Inline CSS only, for email client compatibility.

Each template function returns (subject, html_body, text_body).
"""

from __future__ import annotations

from html import escape

BG_PAGE = "#F4F5F7"
BG_CARD = "#FFFFFF"
ACCENT = "#2F5BEA"
TEXT_PRIMARY = "#111827"
TEXT_SECONDARY = "#4B5563"
BORDER = "#E5E7EB"

SIGNATURE = "-- The Warden Team"


def _base_layout(content: str, app_name: str = "Warden") -> str:
    """Wrap content in the base email layout."""
    return f"""\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{app_name}</title>
</head>
<body style="margin: 0; padding: 0; background-color: {BG_PAGE}; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: {BG_PAGE};">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="560" style="max-width: 560px; width: 100%;">
                    <tr>
                        <td style="background-color: {BG_CARD}; border: 1px solid {BORDER}; border-radius: 8px; padding: 36px 32px;">
                            {content}
                        </td>
                    </tr>
                    <tr>
                        <td align="center" style="padding-top: 24px;">
                            <p style="color: {TEXT_SECONDARY}; font-size: 12px; line-height: 1.5; margin: 0;">
                                Sent by {app_name}. If you didn't expect this email, you can ignore it.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>"""


def _button(url: str, label: str) -> str:
    return f"""\
<table role="presentation" cellspacing="0" cellpadding="0" border="0" style="margin: 24px auto;">
    <tr>
        <td align="center" style="background-color: {ACCENT}; border-radius: 6px;">
            <a href="{url}" target="_blank" style="display: inline-block; padding: 12px 28px; color: #FFFFFF; font-size: 15px; font-weight: 600; text-decoration: none;">
                {label}
            </a>
        </td>
    </tr>
</table>"""


def _fallback_link(url: str) -> str:
    return f"""\
<hr style="border: none; border-top: 1px solid {BORDER}; margin: 24px 0;">
<p style="color: {TEXT_SECONDARY}; font-size: 12px; line-height: 1.5; margin: 0;">
    If the button doesn't work, copy and paste this URL:<br>
    <a href="{url}" style="color: {ACCENT}; word-break: break-all;">{url}</a>
</p>"""


def verify_email(display_name: str | None, verify_url: str, expires_hours: int = 24) -> tuple[str, str, str]:
    """
    Email verification, sent on registration and on resend.

    Returns:
        (subject, html_body, text_body)
    """
    name = display_name or "there"
    subject = "Verify your email address"
    content = f"""\
<h1 style="color: {TEXT_PRIMARY}; font-size: 22px; margin: 0 0 16px 0;">Verify your email</h1>
<p style="color: {TEXT_SECONDARY}; font-size: 15px; line-height: 1.6; margin: 0 0 8px 0;">Hi {escape(name)},</p>
<p style="color: {TEXT_SECONDARY}; font-size: 15px; line-height: 1.6; margin: 0;">
    Confirm this address to finish setting up your account.
</p>
{_button(verify_url, "Verify Email Address")}
<p style="color: {TEXT_SECONDARY}; font-size: 13px; line-height: 1.5; margin: 0;">
    This link expires in <strong style="color: {TEXT_PRIMARY};">{expires_hours} hours</strong>.
</p>
{_fallback_link(verify_url)}"""
    text_body = (
        f"Hi {name},\n\n"
        f"Confirm your email address by visiting this link:\n\n{verify_url}\n\n"
        f"This link expires in {expires_hours} hours.\n\n"
        f"If you did not create an account, please ignore this email.\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body


def password_reset(reset_url: str, expires_minutes: int = 60) -> tuple[str, str, str]:
    """
    Password reset email.

    Returns:
        (subject, html_body, text_body)
    """
    subject = "Reset your password"
    window = "1 hour" if expires_minutes == 60 else f"{expires_minutes} minutes"
    content = f"""\
<h1 style="color: {TEXT_PRIMARY}; font-size: 22px; margin: 0 0 16px 0;">Reset your password</h1>
<p style="color: {TEXT_SECONDARY}; font-size: 15px; line-height: 1.6; margin: 0;">
    We received a request to reset your password. Choose a new one below.
</p>
{_button(reset_url, "Reset Password")}
<p style="color: {TEXT_SECONDARY}; font-size: 13px; line-height: 1.5; margin: 0;">
    This link expires in <strong style="color: {TEXT_PRIMARY};">{window}</strong> and can be used once.
    If you didn't request this, your password stays unchanged.
</p>
{_fallback_link(reset_url)}"""
    text_body = (
        f"Reset your password\n\n"
        f"Click this link to set a new password:\n\n{reset_url}\n\n"
        f"This link expires in {window} and can be used once.\n\n"
        f"If you didn't request a password reset, ignore this email. "
        f"Your password will remain unchanged.\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body


def password_changed(display_name: str | None) -> tuple[str, str, str]:
    """Password changed notice. Returns (subject, html_body, text_body)."""
    name = display_name or "there"
    subject = "Your password has been changed"
    content = f"""\
<h1 style="color: {TEXT_PRIMARY}; font-size: 22px; margin: 0 0 16px 0;">Password changed</h1>
<p style="color: {TEXT_SECONDARY}; font-size: 15px; line-height: 1.6; margin: 0 0 8px 0;">Hi {escape(name)},</p>
<p style="color: {TEXT_SECONDARY}; font-size: 15px; line-height: 1.6; margin: 0 0 16px 0;">
    Your password was changed and every other session was signed out.
</p>
<p style="color: {TEXT_SECONDARY}; font-size: 14px; line-height: 1.5; margin: 0;">
    If you didn't make this change, reset your password immediately.
</p>"""
    text_body = (
        f"Hi {name},\n\n"
        f"Your password was changed and every other session was signed out.\n\n"
        f"If you didn't make this change, reset your password immediately.\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body
