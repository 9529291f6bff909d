import unittest

from nbpkg.usage import collect_references, external_package_names, uses_managed_packages


class TestExternalPackageNames(unittest.TestCase):
    def test_collects_top_level_names_across_cells(self) -> None:
        cells = [
            "import numpy as np\nimport os.path",
            "from pandas.io import json\nfrom . import sibling",
            "def f():\n    import requests\n",
        ]

        self.assertEqual(external_package_names(cells), {"numpy", "os", "pandas", "requests"})

    def test_cells_with_syntax_errors_are_skipped(self) -> None:
        self.assertEqual(external_package_names(["import (", "import attrs"]), {"attrs"})


class TestUsageMode(unittest.TestCase):
    def test_direct_package_manager_calls_opt_out(self) -> None:
        refs = collect_references(["import nbpkg\nnbpkg.api.add('numpy')"])

        self.assertIn("nbpkg.api.add", refs)
        self.assertFalse(uses_managed_packages(refs))

    def test_plain_documents_are_managed(self) -> None:
        refs = collect_references(["import nbpkg\nprint(nbpkg.__version__)"])

        self.assertTrue(uses_managed_packages(refs))
        self.assertTrue(uses_managed_packages([]))


if __name__ == "__main__":
    unittest.main()
