import smtplib
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from servicedesk.config import Settings
from servicedesk.errors import DeliveryError
from servicedesk.services.cases import SERVICE_REQUEST, TICKET, CaseChange
from servicedesk.services.lifecycle import change_summary, has_location, is_final
from servicedesk.services.notifications import Mailer, NotificationDispatcher, OutgoingMessage


VISIT = datetime(2025, 3, 5, 9, 0, tzinfo=timezone.utc)


def _change(old="Open", new="Open", old_visit=None, new_visit=None):
    return CaseChange(old_status=old, new_status=new, old_visit_at=old_visit, new_visit_at=new_visit)


def test_admin_accounts_parsing():
    s = Settings(admin_credentials="root:pa:ss, ops:x ,broken,:nouser,empty:")
    assert s.admin_accounts == {"root": "pa:ss", "ops": "x"}


def test_format_visit_uses_display_zone(settings):
    dispatcher = NotificationDispatcher(settings, Mailer(settings))
    assert dispatcher.format_visit(VISIT) == "March 05, 2025 02:30 PM"
    # naive values are read as UTC
    assert dispatcher.format_visit(VISIT.replace(tzinfo=None)) == "March 05, 2025 02:30 PM"
    assert dispatcher.format_visit(None) is None


def test_change_summary_for_visit_only():
    summary = change_summary(TICKET, _change(new_visit=VISIT))
    assert summary.startswith("A visit has been scheduled for your ticket.")
    assert summary.endswith("Please check your dashboard for more details.")


def test_change_summary_for_closure():
    change = _change(old="In-Progress", new="Closed")
    summary = change_summary(TICKET, change)
    assert "Your ticket has been closed as the service is completed." in summary
    assert "dashboard" not in summary
    assert is_final(TICKET, change)


def test_change_summary_for_completed_service_request():
    summary = change_summary(SERVICE_REQUEST, _change(new="Completed"))
    assert "Your service request has been completed." in summary


def test_change_summary_is_empty_when_nothing_changed():
    assert change_summary(TICKET, _change(old="Closed", new="Closed")) == ""
    assert change_summary(TICKET, _change(old_visit=VISIT, new_visit=VISIT)) == ""


def test_has_location():
    assert not has_location(SimpleNamespace(lat=0.0, lng=0.0))
    assert not has_location(SimpleNamespace(lat=None, lng=1.0))
    assert has_location(SimpleNamespace(lat=0.0, lng=77.6))


def test_new_case_alert_skipped_without_admin_inbox(settings):
    settings.admin_email = None
    dispatcher = NotificationDispatcher(settings, Mailer(settings))
    case = SimpleNamespace(reference="TKT-250305-ABCDEF")
    assert dispatcher.new_case_for_admin(TICKET, case, SimpleNamespace()) is None


def test_deliver_logs_and_swallows_delivery_errors(settings):
    mailer = MagicMock()
    mailer.send.side_effect = DeliveryError("smtp down")
    dispatcher = NotificationDispatcher(settings, mailer)
    dispatcher.deliver(OutgoingMessage("a@x.com", "s", "body", "test"))
    mailer.send.assert_called_once_with("a@x.com", "s", "body")


def test_dispatch_skips_empty_messages(settings):
    dispatcher = NotificationDispatcher(settings, Mailer(settings))
    schedule = MagicMock()
    dispatcher.dispatch(schedule, None)
    schedule.assert_not_called()

    message = OutgoingMessage("a@x.com", "s", "body", "test")
    dispatcher.dispatch(schedule, message)
    schedule.assert_called_once_with(dispatcher.deliver, message)


def test_mailer_is_a_no_op_when_unconfigured():
    mailer = Mailer(Settings(smtp_host=None, mail_from=None))
    with patch("servicedesk.services.notifications.smtplib.SMTP") as smtp:
        mailer.send("a@x.com", "s", "body")
    smtp.assert_not_called()


def test_mailer_sends_with_starttls_and_login():
    mailer = Mailer(Settings(
        smtp_host="smtp.desk.test",
        mail_from="noreply@desk.test",
        smtp_username="desk",
        smtp_password="pw",
    ))
    with patch("servicedesk.services.notifications.smtplib.SMTP") as smtp:
        mailer.send("a@x.com", "Hello", "body")
    conn = smtp.return_value.__enter__.return_value
    conn.starttls.assert_called_once()
    conn.login.assert_called_once_with("desk", "pw")
    sent = conn.send_message.call_args[0][0]
    assert sent["To"] == "a@x.com"
    assert sent["Subject"] == "Hello"


def test_mailer_wraps_transport_errors():
    mailer = Mailer(Settings(smtp_host="smtp.desk.test", mail_from="noreply@desk.test"))
    with patch("servicedesk.services.notifications.smtplib.SMTP", side_effect=OSError("refused")):
        with pytest.raises(DeliveryError):
            mailer.send("a@x.com", "s", "body")
    with patch("servicedesk.services.notifications.smtplib.SMTP", side_effect=smtplib.SMTPException("nope")):
        with pytest.raises(DeliveryError):
            mailer.send("a@x.com", "s", "body")
