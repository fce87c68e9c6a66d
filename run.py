#!/usr/bin/env python3
"""
Employee Loans Entry Point

Starts the FastAPI server with the employee loan workflow.
"""

import sys

from employee_loans.api import run_server
from employee_loans.config import get_config
from employee_loans.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting Employee Loans API on {config.api_host}:{config.api_port}")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Employee Loans API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
