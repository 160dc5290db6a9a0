"""Тесты email-уведомлений."""
import smtplib
from unittest.mock import MagicMock, patch

import pytest

from harvester.config import HarvestOptions
from harvester.notifier import EmailNotifier


def _options(**overrides) -> HarvestOptions:
    data = {"email_notifications": True, "notify_email": "ops@example.com"}
    data.update(overrides)
    return HarvestOptions(**data)


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self) -> None:
        with patch("harvester.notifier.smtplib.SMTP") as smtp_cls:
            assert not await EmailNotifier(_options(email_notifications=False)).send("s", "b")
            assert not await EmailNotifier(_options(notify_email="")).send("s", "b")
        smtp_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_sends_message(self) -> None:
        with patch("harvester.notifier.smtplib.SMTP") as smtp_cls:
            smtp = smtp_cls.return_value.__enter__.return_value
            assert await EmailNotifier(_options(smtp_host="mail.local", smtp_port=2525)).send(
                "Fetch failed", "details",
            )

        smtp_cls.assert_called_once_with("mail.local", 2525, timeout=10.0)
        smtp.starttls.assert_not_called()
        message = smtp.send_message.call_args.args[0]
        assert message["To"] == "ops@example.com"
        assert message["Subject"] == "Fetch failed"

    @pytest.mark.asyncio
    async def test_login_with_credentials(self) -> None:
        with patch("harvester.notifier.smtplib.SMTP") as smtp_cls:
            smtp = smtp_cls.return_value.__enter__.return_value
            await EmailNotifier(_options(smtp_username="u", smtp_password="p")).send("s", "b")

        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("u", "p")

    @pytest.mark.asyncio
    async def test_smtp_error_returns_false(self) -> None:
        with patch("harvester.notifier.smtplib.SMTP") as smtp_cls:
            smtp = smtp_cls.return_value.__enter__.return_value
            smtp.send_message.side_effect = smtplib.SMTPException("relay denied")
            assert not await EmailNotifier(_options()).send("s", "b")

    @pytest.mark.asyncio
    async def test_connection_error_returns_false(self) -> None:
        with patch("harvester.notifier.smtplib.SMTP", MagicMock(side_effect=ConnectionRefusedError())):
            assert not await EmailNotifier(_options()).send("s", "b")
