# tests/conftest.py
import os

# Set the TESTING environment variable before any tests are collected/run.
# route_dispatch.db.database reads it at import time to pick the in-memory engine.
os.environ["TESTING"] = "True"
