from __future__ import annotations

import re
import unittest
from pathlib import Path

from page_balancer import progress, structured_logger

_ROOT = Path(__file__).resolve().parent.parent


class PackagingTests(unittest.TestCase):
    def test_readme_is_the_project_readme(self) -> None:
        pyproject = (_ROOT / "pyproject.toml").read_text(encoding="utf-8")
        match = re.search(r'^readme\s*=\s*"([^"]+)"', pyproject, re.MULTILINE)
        assert match is not None
        self.assertEqual(match.group(1), "README.md")
        readme = (_ROOT / match.group(1)).read_text(encoding="utf-8")
        self.assertTrue(readme.startswith("# page-balancer"))

    def test_script_modules_carry_interpreter_header(self) -> None:
        for module in (structured_logger, progress):
            with self.subTest(module=module.__name__):
                lines = Path(module.__file__).read_text(encoding="utf-8").splitlines()
                self.assertEqual(lines[:2], ["#!/usr/bin/env python3", "# -*- coding: utf-8 -*-"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
