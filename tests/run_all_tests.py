"""
Master test runner - Executes all tests and generates consolidated report.

This script runs all service tests and logs results to session_test_report.log
"""

import sys
import os
import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.test_logger import test_logger


def run_all_tests():
    """Run all service tests and generate report."""

    test_logger.logger.info("Starting comprehensive service testing...")
    test_logger.logger.info("")

    # Test files in execution order
    test_files = [
        "tests/test_config.py",
        "tests/test_connection.py",
        "tests/test_structured_logging.py",
        "tests/test_models.py",
        "tests/test_storage.py",
        "tests/test_cache_locks.py",
        "tests/test_session_manager.py",
        "tests/test_turn_recorder.py",
        "tests/test_expression.py",
        "tests/test_rule_engine.py",
        "tests/test_context_service.py",
        "tests/test_analytics.py",
        "tests/test_conversation.py",
        "tests/test_api.py"
    ]

    # Run pytest with custom options
    pytest_args = [
        "-v",  # Verbose
        "--tb=short",  # Short traceback
        "--disable-warnings",  # Cleaner output
        *test_files
    ]

    # Execute tests
    test_logger.logger.info("Executing pytest with all test files...")
    exit_code = pytest.main(pytest_args)

    test_logger.logger.info("")
    test_logger.logger.info("=" * 80)
    test_logger.logger.info("TEST EXECUTION COMPLETE")
    test_logger.logger.info("=" * 80)

    # Generate summary
    summary = test_logger.generate_summary()

    # Print final status
    if summary['failed'] == 0:
        test_logger.logger.info("")
        test_logger.logger.info("✓ ALL TESTS PASSED!")
        test_logger.logger.info("")
    else:
        test_logger.logger.info("")
        test_logger.logger.info(f"✗ {summary['failed']} TESTS FAILED")
        test_logger.logger.info("")

    return exit_code


if __name__ == "__main__":
    sys.exit(run_all_tests())
