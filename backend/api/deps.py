from fastapi import Request

from services.adherence_engine import AdherenceEngine


def get_engine(request: Request) -> AdherenceEngine:
    return request.app.state.adherence_engine
