# test_session_state.py

import pytest
from unittest.mock import MagicMock

from session_state import Session, SessionManager


def test_session_requires_id_and_credential():
    with pytest.raises(ValueError):
        Session(user_id="", credential="token")
    with pytest.raises(ValueError):
        Session(user_id="u-1", credential=None)


def test_session_from_login_response():
    session = Session.from_login_response({
        'accessToken': "token",
        'refreshToken': "refresh",
        'id': 7,
        'username': "alice",
        'roles': ["donor", "Recipient"],
    })
    assert session.user_id == "7"
    assert session.credential == "token"
    assert session.refresh_token == "refresh"
    assert session.is_donor and session.is_recipient
    assert session.auth_headers() == {'Authorization': "Bearer token", 'id': "7"}


def test_credential_not_in_repr(donor_session):
    assert "donor-token" not in repr(donor_session)


def test_login_and_logout_notify_listeners(donor_session):
    manager = SessionManager()
    listener = MagicMock()
    manager.add_listener(listener)

    manager.login(donor_session)
    manager.logout()
    manager.logout()

    assert [c.args[0] for c in listener.call_args_list] == [donor_session, None]
    assert not manager.is_authenticated


def test_login_same_session_is_noop(donor_session):
    manager = SessionManager()
    listener = MagicMock()
    manager.add_listener(listener)

    manager.login(donor_session)
    manager.login(donor_session)

    listener.assert_called_once_with(donor_session)


def test_switching_user_ends_previous_session(donor_session, recipient_session):
    manager = SessionManager()
    listener = MagicMock()
    manager.add_listener(listener)

    manager.login(donor_session)
    manager.login(recipient_session)

    assert [c.args[0] for c in listener.call_args_list] == [donor_session, None, recipient_session]
    assert manager.current is recipient_session


def test_removed_listener_not_called(donor_session):
    manager = SessionManager()
    listener = MagicMock()
    manager.add_listener(listener)
    manager.remove_listener(listener)

    manager.login(donor_session)

    listener.assert_not_called()
