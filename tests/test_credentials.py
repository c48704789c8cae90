from __future__ import annotations

import pytest

from ssmsdec import CredentialRecord, extract_credentials, split_connection_string

SCENARIO = "Data Source=srv1;Persist Security Info=True;User ID=sa;Password=P@ss;Pooling=False"


def test_extract_credentials() -> None:
    record = extract_credentials("Connection1", SCENARIO)

    assert record == CredentialRecord("Connection1", "srv1", "User ID=sa", "Password=P@ss")
    assert record.lines() == ["srv1", "User ID=sa", "Password=P@ss"]


@pytest.mark.parametrize(
    "text",
    [
        "Data Source=srv1;Integrated Security=True",
        "Data Source=srv1;Persist Security Info=False;User ID=sa;Password=P@ss",
        "Data Source=srv1;User ID=sa;Password=P@ss",
        "",
    ],
)
def test_extract_credentials_without_marker(text: str) -> None:
    assert extract_credentials("Connection1", text) is None


def test_extract_credentials_reordered_fields() -> None:
    text = "password=secret;UID=app;persist security info=yes;Server=tcp:db.local,1433;Initial Catalog=crm"

    record = extract_credentials("Connection4", text)

    assert record == CredentialRecord("Connection4", "tcp:db.local,1433", "UID=app", "password=secret")


def test_extract_credentials_quoted_password() -> None:
    text = "Data Source=srv2;Persist Security Info=True;User ID=sa;Password=\"a;b\"\"c\";Pooling=False"

    record = extract_credentials("Connection5", text)

    assert record.data_source == "srv2"
    assert record.password == "Password=\"a;b\"\"c\""


def test_extract_credentials_missing_field(capsys) -> None:
    record = extract_credentials("Connection6", "Data Source=srv3;Persist Security Info=True;Password=x")

    assert record == CredentialRecord("Connection6", "srv3", None, "Password=x")
    assert record.lines() == ["srv3", "User ID=<not set>", "Password=x"]
    assert "Connection6: persisted credential without user id" in capsys.readouterr().out


def test_split_connection_string() -> None:
    pairs = split_connection_string(" Data Source = srv1 ;;Password='it''s';trailing")

    assert pairs == [
        ("data source", "srv1", "Data Source = srv1"),
        ("password", "it's", "Password='it''s'"),
    ]
