"""ASGI entrypoint for the lab feedback API."""

from lab_feedback.api.app import create_app
from lab_feedback.containers import build_container

app = create_app(build_container())
