# feeledger/api/deps.py
# Hands the process-wide Services (built in main.py) to endpoints.

from fastapi import Request

from feeledger.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
