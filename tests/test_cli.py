import json
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from book import Book
from library import Library
from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(cli_db, monkeypatch):
    # set_output_mode() writes os.environ directly; pin it so it is restored afterwards
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    return cli_db


def test_list_no_books():
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_and_list():
    result = runner.invoke(app, ["add-book", "Dune", "Frank Herbert", "--quantity", "2", "--category", "SF"])
    assert result.exit_code == 0
    assert "Added: #1 Dune by Frank Herbert (2 copies)" in result.stdout

    result = runner.invoke(app, ["books"])
    assert "1 - Dune by Frank Herbert [2/2]" in result.stdout


def test_books_json_output():
    runner.invoke(app, ["add-book", "Dune", "Frank Herbert"])
    result = runner.invoke(app, ["--output", "json", "books"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)[0]["title"] == "Dune"


def test_add_book_invalid():
    result = runner.invoke(app, ["add-book", "Dune", "1234"])
    assert result.exit_code == 1
    assert "Error: Author cannot be empty or numeric." in result.stdout


def test_import_isbn(monkeypatch):
    mock_book = Book("Test Book", "Test Author", "9780306406157", id=1, quantity=1)
    add_mock = MagicMock(return_value=mock_book)
    monkeypatch.setattr(Library, "add_book_by_isbn", add_mock)

    result = runner.invoke(app, ["import-isbn", "9780306406157"])
    assert result.exit_code == 0
    assert "Added: #1 Test Book by Test Author (1 copies)" in result.stdout
    add_mock.assert_called_once_with("9780306406157", quantity=1)


def test_import_isbn_not_found(monkeypatch):
    monkeypatch.setattr(Library, "add_book_by_isbn", MagicMock(side_effect=LookupError("Book not found.")))

    result = runner.invoke(app, ["import-isbn", "0000000000"])
    assert result.exit_code == 1
    assert "Error: Book not found." in result.stdout


def test_loan_workflow():
    runner.invoke(app, ["add-book", "Dune", "Frank Herbert"])
    result = runner.invoke(app, ["add-user", "Bob Reader", "bob@example.com"])
    assert "Created user #2 bob@example.com (user)" in result.stdout
    assert "API token: " in result.stdout

    result = runner.invoke(app, ["--as", "bob@example.com", "request", "1", "--loan-date", "2024-03-01"])
    assert result.exit_code == 0
    assert "Loan #1 requested: Dune [pending]" in result.stdout

    result = runner.invoke(app, ["approve", "1"])
    assert "Loan #1 approved: Dune [approved]" in result.stdout

    result = runner.invoke(app, ["request", "1"])
    assert result.exit_code == 1
    assert "Error: No copies of book 1 are available." in result.stdout

    result = runner.invoke(app, ["fine", "1", "--date", "2024-03-20"])
    assert "Fine for loan #1: 25000" in result.stdout

    result = runner.invoke(app, ["return", "1", "--date", "2024-03-20"])
    assert result.exit_code == 0
    assert "Loan #1 returned: Dune [returned] fine 25000" in result.stdout

    result = runner.invoke(app, ["loans", "--status", "returned"])
    assert "#1 Dune - Bob Reader [returned] due 2024-03-15 fine 25000" in result.stdout


def test_reject_needs_reason():
    runner.invoke(app, ["add-book", "Dune", "Frank Herbert"])
    runner.invoke(app, ["request", "1"])

    result = runner.invoke(app, ["reject", "1"])
    assert result.exit_code == 1
    assert "Error: A rejection reason is required." in result.stdout

    result = runner.invoke(app, ["reject", "1", "--reason", "Reserved"])
    assert "Loan #1 rejected: Dune [rejected]" in result.stdout


def test_members_cannot_approve():
    runner.invoke(app, ["add-book", "Dune", "Frank Herbert"])
    runner.invoke(app, ["add-user", "Bob Reader", "bob@example.com"])
    runner.invoke(app, ["--as", "bob@example.com", "request", "1"])

    result = runner.invoke(app, ["--as", "bob@example.com", "approve", "1"])
    assert result.exit_code == 1
    assert "Error: user may not perform this action." in result.stdout

    result = runner.invoke(app, ["--as", "bob@example.com", "add-book", "Emma", "Jane Austen"])
    assert result.exit_code == 1


def test_unknown_acting_user():
    result = runner.invoke(app, ["--as", "ghost@example.com", "stats"])
    assert result.exit_code == 1
    assert "Error: No user with email ghost@example.com." in result.stdout


def test_stats():
    runner.invoke(app, ["add-book", "Dune", "Frank Herbert", "--quantity", "3"])
    runner.invoke(app, ["request", "1"])

    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Total Books: 1" in result.stdout
    assert "Pending Loans: 1" in result.stdout

    runner.invoke(app, ["add-user", "Bob Reader", "bob@example.com"])
    result = runner.invoke(app, ["--as", "bob@example.com", "stats"])
    assert "Total Loans: 0" in result.stdout


def test_users_listing():
    runner.invoke(app, ["add-user", "Bob Reader", "bob@example.com"])
    result = runner.invoke(app, ["users"])
    assert "bob@example.com" in result.stdout
    assert "[admin]" in result.stdout


def test_serve_runs_uvicorn(monkeypatch):
    run_mock = MagicMock()
    monkeypatch.setattr("main.subprocess.run", run_mock)

    result = runner.invoke(app, ["serve", "--host", "0.0.0.0", "--port", "9000"])
    assert result.exit_code == 0
    assert "Starting API on http://0.0.0.0:9000/docs" in result.stdout
    command = run_mock.call_args[0][0]
    assert command[1:4] == ["-m", "uvicorn", "api:app"]
    assert command[-2:] == ["--port", "9000"]


@pytest.fixture
def member_with_loan():
    runner.invoke(app, ["add-book", "Dune", "Frank Herbert", "--quantity", "2"])
    runner.invoke(app, ["add-user", "Mal Reader", "mal@example.com"])
    runner.invoke(app, ["add-user", "Nia Reader", "nia@example.com"])
    runner.invoke(app, ["--as", "mal@example.com", "request", "1", "--loan-date", "2024-03-01"])
    runner.invoke(app, ["--as", "nia@example.com", "request", "1", "--loan-date", "2024-03-01"])
    runner.invoke(app, ["approve", "1"])
    return "mal@example.com"


def test_members_cannot_create_accounts(member_with_loan):
    result = runner.invoke(app, ["--as", member_with_loan, "add-user", "Evil", "evil@example.com", "--admin"])
    assert result.exit_code == 1
    assert "Error: user may not perform this action." in result.stdout

    result = runner.invoke(app, ["users"])
    assert "evil@example.com" not in result.stdout


@pytest.mark.parametrize("command", [["users"], ["overdue"], ["fine", "1"]])
def test_admin_only_commands_refuse_members(member_with_loan, command):
    result = runner.invoke(app, ["--as", member_with_loan, *command])
    assert result.exit_code == 1
    assert "Error: user may not perform this action." in result.stdout


def test_members_only_list_their_own_loans(member_with_loan):
    result = runner.invoke(app, ["--as", member_with_loan, "loans"])
    assert result.exit_code == 0
    assert "Mal Reader" in result.stdout
    assert "Nia Reader" not in result.stdout

    # --user-id cannot widen a member's view
    result = runner.invoke(app, ["--as", member_with_loan, "loans", "--user-id", "3"])
    assert "Nia Reader" not in result.stdout

    result = runner.invoke(app, ["loans"])
    assert "Mal Reader" in result.stdout and "Nia Reader" in result.stdout
