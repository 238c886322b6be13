"""Tests for the add_repository admin script."""

import unittest
from unittest.mock import patch

from app.models import Repository
from app.scripts import add_repository
from tests.support import make_session_factory


class TestAddRepository(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()

    def run_script(self, *argv: str) -> int:
        with patch.object(add_repository, "SessionLocal", self.factory), patch(
            "sys.argv", ["add_repository", *argv]
        ):
            return add_repository.main()

    def test_registers_repository_once(self) -> None:
        self.assertEqual(self.run_script("7", "octo/payments", "--branch", "develop"), 0)
        with self.factory() as session:
            repo = session.query(Repository).one()
            self.assertEqual(repo.workspace_id, 7)
            self.assertEqual(repo.default_branch, "develop")
            self.assertEqual(repo.clone_url, "https://github.com/octo/payments.git")

        self.assertEqual(self.run_script("7", "octo/payments"), 1)

    def test_rejects_bad_full_name(self) -> None:
        self.assertEqual(self.run_script("7", "payments"), 1)


if __name__ == "__main__":
    unittest.main()
