import json
import logging
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from servicedesk.logging import render_exception
from servicedesk.models.models import User
from servicedesk.services.users import UserStore

from .conftest import auth


def _explode(password):
    expected = password
    raise RuntimeError(f"lookup failed for {len(expected)} chars")


def test_rendered_tracebacks_carry_no_frame_locals():
    try:
        _explode("opspass")
    except RuntimeError:
        event = render_exception(None, "error", {"event": "store_error", "exc_info": True})

    [stack] = event["exception"]
    assert stack["frames"]
    assert all("locals" not in frame for frame in stack["frames"])
    assert "opspass" not in json.dumps(event, default=str)


def test_store_error_log_keeps_secrets_out(client, admin_token, caplog):
    def failing_query(*args, **kwargs):
        password = "opspass"
        raise OperationalError("SELECT * FROM users", None, Exception(f"db down ({len(password)})"))

    caplog.set_level(logging.INFO)
    with patch.object(UserStore, "list_users", side_effect=failing_query):
        resp = client.get("/users", headers=auth(admin_token))
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Server error"

    events = [json.loads(r.getMessage()) for r in caplog.records if "store_error" in r.getMessage()]
    assert len(events) == 1
    assert events[0]["exception"]
    assert "opspass" not in caplog.text
    assert '"locals"' not in caplog.text


def test_engine_keeps_statement_parameters_out_of_errors(db):
    for phone in ("555-7", "555-8"):
        db.add(User(
            name="Dup",
            company_name="Dup Co",
            phone=phone,
            email="dup@x.com",
            password_hash="pbkdf2-secret-hash",
            address="Somewhere",
        ))
    with pytest.raises(IntegrityError) as err:
        db.commit()
    db.rollback()
    assert "pbkdf2-secret-hash" not in str(err.value)
