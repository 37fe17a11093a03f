"""
User Profile local toolkit
==========================
Developer helpers for the user profile Lambda:
  1. A local HTTP server that feeds API Gateway proxy events to the handler
  2. A seeder that POSTs profiles from a YAML/JSON file
  3. An end-to-end smoke test against a deployed (or local) API

Dependencies (install via pip):
  flask>=3.0.0
  pyyaml>=6.0.0
  requests>=2.31.0

Example usage:
  # Run the API on localhost:8080 backed by an in-memory table
  python user_profile_local.py serve --port 8080

  # Or against a real DynamoDB table
  python user_profile_local.py serve --table UserProfile

  # Load profiles, then exercise every endpoint
  python user_profile_local.py seed users.yaml --url http://localhost:8080
  python user_profile_local.py smoke --url http://localhost:8080
"""
from __future__ import annotations

import argparse
import copy
import importlib.util
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

HANDLER_PATH = (
    Path(__file__).resolve().parent.parent
    / "user-profile-aws-lab" / "app" / "lambdas" / "user_profile" / "handler.py"
)
DEFAULT_API_URL = os.environ.get("API_URL", "http://127.0.0.1:8080")
REQUEST_TIMEOUT = 10


def load_handler_module(path: Path = HANDLER_PATH):
    """Import the Lambda's handler.py by file path (Lambda dirs are not packages)."""
    spec = importlib.util.spec_from_file_location("user_profile_handler", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


# ---------------------------
# In-memory table
# ---------------------------

class InMemoryTable:
    """The subset of a boto3 DynamoDB Table the handler uses, held in a dict."""

    def __init__(self, key: str = "userId"):
        self.key = key
        self.items: Dict[str, Dict[str, Any]] = {}

    def get_item(self, Key):
        item = self.items.get(Key[self.key])
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, Item):
        self.items[Item[self.key]] = copy.deepcopy(Item)
        return {}

    def update_item(self, Key, UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues):
        item = self.items.setdefault(Key[self.key], dict(Key))
        for clause in UpdateExpression[len("SET "):].split(","):
            name_ref, value_ref = (part.strip() for part in clause.split("="))
            item[ExpressionAttributeNames[name_ref]] = copy.deepcopy(ExpressionAttributeValues[value_ref])
        return {}

    def delete_item(self, Key):
        self.items.pop(Key[self.key], None)
        return {}

    def scan(self, **kwargs):
        return {"Items": [copy.deepcopy(item) for item in self.items.values()]}


# ---------------------------
# Local server
# ---------------------------

def _proxy_event(method: str, path: str, user_id: Optional[str], body: str, headers, query) -> Dict[str, Any]:
    return {
        "httpMethod": method,
        "path": path,
        "pathParameters": {"id": user_id} if user_id is not None else None,
        "queryStringParameters": query or None,
        "headers": dict(headers),
        "body": body or None,
        "isBase64Encoded": False,
    }


def create_app(table=None, handler_module=None):
    from flask import Flask, Response, request

    module = handler_module or load_handler_module()
    store = module.UserStore(table if table is not None else InMemoryTable())
    profile_handler = module.ProfileHandler(store)

    app = Flask(__name__)
    methods = ["GET", "POST", "PUT", "DELETE", "PATCH"]

    def _invoke(user_id: Optional[str]):
        event = _proxy_event(
            request.method, request.path, user_id,
            request.get_data(as_text=True), request.headers, request.args.to_dict(),
        )
        result = module.handle_event(event, lambda: profile_handler)
        return Response(result["body"], status=result["statusCode"], headers=result["headers"])

    @app.route("/users", methods=methods)
    def users():
        return _invoke(None)

    @app.route("/users/<user_id>", methods=methods)
    def user(user_id):
        return _invoke(user_id)

    return app


def run_server(host: str, port: int, table_name: Optional[str] = None):
    module = load_handler_module()
    table = module.UserStore.from_env(table_name).table if table_name else None
    app = create_app(table=table, handler_module=module)

    backing = f"table {table_name}" if table_name else "in-memory table"
    print(f"[*] User Profile API ({backing}) listening on http://{host}:{port}")
    app.run(host=host, port=port, threaded=True)


# ---------------------------
# Seed & smoke
# ---------------------------

def load_profiles(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        if path.endswith((".yaml", ".yml")):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if isinstance(data, dict):
        data = data.get("users", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of profiles or a 'users' list")
    return data


def seed(base_url: str, profiles: List[Dict[str, Any]], http=None) -> int:
    """POST each profile; returns how many were created."""
    http = http or requests.Session()
    created = 0
    for profile in profiles:
        resp = http.request("POST", f"{base_url}/users", json=profile, timeout=REQUEST_TIMEOUT)
        label = profile.get("userId", "<generated>")
        print(f"[{resp.status_code}] {label}")
        if resp.status_code == 201:
            created += 1
    return created


def run_smoke(base_url: str, http=None) -> bool:
    """Walk one profile through its whole lifecycle, stopping at the first surprise."""
    http = http or requests.Session()
    stamp = int(time.time() * 1000)
    user_id = f"smoke-user-{stamp}"
    users_url = f"{base_url}/users"
    user_url = f"{users_url}/{user_id}"

    steps = [
        ("create", "POST", users_url, {
            "userId": user_id,
            "email": f"smoke{stamp}@example.com",
            "firstName": "Test",
            "lastName": "User",
            "age": 30,
        }, 201),
        ("get", "GET", user_url, None, 200),
        ("update", "PUT", user_url, {"firstName": "Updated", "lastName": "Name", "age": 35}, 200),
        ("get updated", "GET", user_url, None, 200),
        ("list", "GET", users_url, None, 200),
        ("delete", "DELETE", user_url, None, 200),
        ("get deleted", "GET", user_url, None, 404),
    ]

    for name, method, url, body, expected in steps:
        resp = http.request(method, url, json=body, timeout=REQUEST_TIMEOUT)
        if resp.status_code != expected:
            print(f"[✗] {name}: expected {expected}, got {resp.status_code} {resp.text}")
            return False
        print(f"[✓] {name}: {resp.status_code}")

        if name == "get updated" and resp.json()["user"]["firstName"] != "Updated":
            print("[✗] get updated: firstName was not changed")
            return False

    return True


# ---------------------------
# CLI Interface
# ---------------------------

def cli(argv=None):
    parser = argparse.ArgumentParser(description="User Profile local toolkit")
    sub = parser.add_subparsers(dest="command", required=True)

    # serve
    s = sub.add_parser("serve", help="Run the profile API locally")
    s.add_argument("--host", default="127.0.0.1", help="Bind address (default 127.0.0.1)")
    s.add_argument("--port", default=8080, type=int, help="Port (default 8080)")
    s.add_argument("--table", help="DynamoDB table name (default: in-memory)")

    # seed
    d = sub.add_parser("seed", help="Create profiles listed in a YAML/JSON file")
    d.add_argument("input", help="Path to profiles YAML/JSON file")
    d.add_argument("--url", default=DEFAULT_API_URL, help="API base URL (default $API_URL)")

    # smoke
    m = sub.add_parser("smoke", help="Run the create/get/update/delete walkthrough")
    m.add_argument("--url", default=DEFAULT_API_URL, help="API base URL (default $API_URL)")

    args = parser.parse_args(argv)

    if args.command == "serve":
        run_server(args.host, args.port, args.table)

    elif args.command == "seed":
        profiles = load_profiles(args.input)
        created = seed(args.url.rstrip("/"), profiles)
        print(f"[*] Created {created} of {len(profiles)} profiles")

    elif args.command == "smoke":
        if not run_smoke(args.url.rstrip("/")):
            sys.exit(1)
        print("[✓] All endpoints behaved as expected")


if __name__ == "__main__":
    cli()
