# File: tests/run_tests.py
#!/usr/bin/env python3
"""
Test runner for the FleetPark reservation engine tests.

    python tests/run_tests.py                      # everything
    python tests/run_tests.py unit                 # one suite
    python tests/run_tests.py unit.test_pricing    # one module
"""

import unittest
import sys
from pathlib import Path

TESTS_DIR = Path(__file__).parent

# Add the src and tests directories to the Python path
sys.path.insert(0, str(TESTS_DIR.parent / "src"))
sys.path.insert(0, str(TESTS_DIR))


def run_all_tests(start_dir=TESTS_DIR):
    """Run all test suites below start_dir"""
    test_loader = unittest.TestLoader()
    test_suite = test_loader.discover(str(start_dir), pattern='test_*.py', top_level_dir=str(TESTS_DIR))

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


def run_specific_test(test_name):
    """Run a suite directory (unit, integration) or a dotted test module"""
    if (TESTS_DIR / test_name).is_dir():
        return run_all_tests(TESTS_DIR / test_name)

    test_suite = unittest.TestLoader().loadTestsFromName(test_name)
    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


if __name__ == "__main__":
    if len(sys.argv) > 1:
        result = run_specific_test(sys.argv[1])
    else:
        result = run_all_tests()

    sys.exit(0 if result.wasSuccessful() else 1)
