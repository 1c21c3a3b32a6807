#!/usr/bin/env python3
"""
Loan Engine Batch Entry Point

Applies pending migrations, verifies the active-loan index and runs one
auto-close sweep. Intended for cron or a scheduler; configuration comes
from LOAN_ENGINE_* environment variables or a .env file.
"""

import sys

from loan_engine.config import get_config
from loan_engine.errors import LoanEngineError
from loan_engine.engine import LoanEngine
from loan_engine.logging_config import setup_logging, log_action


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format,
                           log_file=config.log_file)

    try:
        engine = LoanEngine.from_config(config)
    except LoanEngineError as e:
        logger.critical(f"Loan engine failed to start: {e}")
        return 1

    try:
        result = engine.run_auto_close_sweep()
        violations = engine.find_invariant_violations()
    except LoanEngineError as e:
        logger.error(f"Auto-close sweep aborted: {e}")
        return 1
    finally:
        engine.close()

    log_action(
        logger, "info",
        f"Auto-close sweep finished: scanned {result.scanned}, closed {result.closed_count}",
        action="loan.auto_close_sweep",
        extra={"closed_loan_ids": result.closed_loan_ids, "errors": result.errors}
    )
    if violations:
        return 2
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
