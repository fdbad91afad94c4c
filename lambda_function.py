"""
AWS Lambda entry point. Configure the function handler as "lambda_function.handler".

Each invocation runs one autoscale tick; schedule the function at the desired tick interval
with an EventBridge rule. A 'config' mapping in the event overrides environment settings.
"""

from fleet_autoscaler.common.logger import setup_logging

setup_logging()

from fleet_autoscaler.main import lambda_handler  # noqa: E402


def handler(event, context):
    return lambda_handler(event or {}, context)
