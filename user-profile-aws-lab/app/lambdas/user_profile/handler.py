# app/lambdas/user_profile/handler.py
import base64
import binascii
import json
import logging
import os
import random
import string
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import EmailStr, Field, StringConstraints, TypeAdapter
from pydantic import ValidationError as SchemaError

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger()
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

TABLE_NAME = os.environ.get("USER_TABLE_NAME", "")
STORE_MAX_ATTEMPTS = int(os.environ.get("STORE_MAX_ATTEMPTS", "3"))
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "10"))

CORS_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "OPTIONS,POST,GET,PUT,DELETE",
    "Access-Control-Allow-Headers": "Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token",
}


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": dict(CORS_HEADERS),
        "body": json.dumps(body, default=str),
    }


# ---------------------------
# Errors
# ---------------------------

class ProfileError(Exception):
    """Base for every error that maps onto an HTTP response."""

    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return _response(self.status_code, body)


class ValidationError(ProfileError):
    status_code = 400


class NotFoundError(ProfileError):
    status_code = 404


class MethodNotAllowedError(ProfileError):
    status_code = 405


class ConflictError(ProfileError):
    status_code = 409


class InternalError(ProfileError):
    status_code = 500


# ---------------------------
# Field validation
# ---------------------------

_BoundedText = Annotated[str, StringConstraints(strict=True, min_length=1, max_length=100)]
_Age = Annotated[int, Field(ge=0, le=150)]

_TEXT = TypeAdapter(_BoundedText)
_EMAIL = TypeAdapter(EmailStr)
_AGE = TypeAdapter(_Age)


def _check(field: str, adapter: TypeAdapter, value: Any) -> List[Dict[str, str]]:
    try:
        adapter.validate_python(value)
    except SchemaError as exc:
        return [{"field": field, "reason": err["msg"]} for err in exc.errors()]
    return []


def validate_user_id(value: Any) -> List[Dict[str, str]]:
    violations = _check("userId", _TEXT, value)
    # Path ids are trimmed, so a padded id could never be addressed again.
    if not violations and value != value.strip():
        violations.append({"field": "userId", "reason": "String should not have leading or trailing whitespace"})
    return violations


def validate_email(value: Any) -> List[Dict[str, str]]:
    return _check("email", _EMAIL, value)


def validate_first_name(value: Any) -> List[Dict[str, str]]:
    return _check("firstName", _TEXT, value)


def validate_last_name(value: Any) -> List[Dict[str, str]]:
    return _check("lastName", _TEXT, value)


def validate_age(value: Any) -> List[Dict[str, str]]:
    # Integral JSON numbers such as 30.0 are fine; booleans and strings are not.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return [{"field": "age", "reason": "Input should be a valid integer"}]
    return _check("age", _AGE, value)


FIELD_VALIDATORS: Dict[str, Callable[[Any], List[Dict[str, str]]]] = {
    "userId": validate_user_id,
    "email": validate_email,
    "firstName": validate_first_name,
    "lastName": validate_last_name,
    "age": validate_age,
}

# Stored form of a valid value, where it differs from what was submitted.
_NORMALIZERS: Dict[str, Callable[[Any], Any]] = {
    "age": int,
}

REQUIRED_ON_CREATE = ("userId", "email", "firstName", "lastName")


def _validate_fields(body: Dict[str, Any], required) -> Dict[str, Any]:
    """Collect every known field from body, raising once with all violations.

    Unknown keys are dropped; values are kept as submitted apart from ``age``,
    which is stored as an int.
    """
    violations: List[Dict[str, str]] = []
    fields: Dict[str, Any] = {}
    for name, validator in FIELD_VALIDATORS.items():
        if name not in body:
            if name in required:
                violations.append({"field": name, "reason": "Field required"})
            continue
        problems = validator(body[name])
        if problems:
            violations.extend(problems)
            continue
        normalize = _NORMALIZERS.get(name)
        fields[name] = normalize(body[name]) if normalize else body[name]
    if violations:
        raise ValidationError("Validation failed", violations)
    return fields


def validate_create(body: Dict[str, Any]) -> Dict[str, Any]:
    return _validate_fields(body, REQUIRED_ON_CREATE)


def validate_update(body: Dict[str, Any]) -> Dict[str, Any]:
    # userId comes from the path; anything in the body is ignored.
    body = {k: v for k, v in body.items() if k != "userId"}
    return _validate_fields(body, ())


def require_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        raise ValidationError(
            "Invalid user ID format",
            [{"field": "userId", "reason": "String should have at least 1 character"}],
        )
    return user_id


def parse_body(raw: Any) -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        body = json.loads(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            "Invalid JSON in request body",
            [{"field": "body", "reason": "Body is not valid JSON"}],
        )
    if not isinstance(body, dict):
        raise ValidationError(
            "Invalid request body",
            [{"field": "body", "reason": "Body must be a JSON object"}],
        )
    return body


def generate_user_id() -> str:
    """Timestamp plus random suffix; unlikely to collide, not guaranteed unique."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"user_{int(time.time() * 1000)}_{suffix}"


def _format_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return _format_iso(datetime.now(timezone.utc))


def later_than(stamp: str, previous: Optional[str]) -> str:
    """Return stamp, or previous + 1ms when stamp does not come after it."""
    if not previous:
        return stamp
    try:
        prior = datetime.fromisoformat(previous.replace("Z", "+00:00"))
        current = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
        if current > prior:
            return stamp
    except (TypeError, ValueError):
        logger.warning("Unparseable updatedAt %r; keeping %s", previous, stamp)
        return stamp
    return _format_iso(prior + timedelta(milliseconds=1))


# ---------------------------
# Key-value store
# ---------------------------

def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


@contextmanager
def _store_call(description: str):
    try:
        yield
    except (ClientError, BotoCoreError) as exc:
        logger.error("%s: %s", description, exc)
        raise InternalError(description) from exc


class UserStore:
    """User profiles in a DynamoDB table keyed by ``userId``."""

    def __init__(self, table):
        self.table = table

    @classmethod
    def from_env(cls, table_name: Optional[str] = None) -> "UserStore":
        name = table_name or TABLE_NAME
        if not name:
            raise RuntimeError("USER_TABLE_NAME environment variable is required")
        config = Config(
            retries={"max_attempts": STORE_MAX_ATTEMPTS, "mode": "adaptive"},
            connect_timeout=STORE_TIMEOUT_SECONDS,
            read_timeout=STORE_TIMEOUT_SECONDS,
        )
        return cls(boto3.resource("dynamodb", config=config).Table(name))

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        with _store_call("Failed to retrieve user"):
            item = self.table.get_item(Key={"userId": user_id}).get("Item")
        return _from_dynamo(item) if item else None

    def put(self, item: Dict[str, Any]) -> None:
        with _store_call("Failed to save user"):
            self.table.put_item(Item=item)

    def update(self, user_id: str, fields: Dict[str, Any]) -> None:
        fields = {k: v for k, v in fields.items() if k != "userId"}
        if not fields:
            return
        with _store_call("Failed to update user"):
            self.table.update_item(
                Key={"userId": user_id},
                UpdateExpression="SET " + ", ".join(f"#{k} = :{k}" for k in fields),
                ExpressionAttributeNames={f"#{k}": k for k in fields},
                ExpressionAttributeValues={f":{k}": v for k, v in fields.items()},
            )

    def delete(self, user_id: str) -> None:
        with _store_call("Failed to delete user"):
            self.table.delete_item(Key={"userId": user_id})

    def scan_all(self) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {}
        with _store_call("Failed to list users"):
            while True:
                page = self.table.scan(**kwargs)
                items.extend(page.get("Items", []))
                last_key = page.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        return _from_dynamo(items)


# ---------------------------
# Request handling
# ---------------------------

@dataclass(frozen=True)
class ProfileRequest:
    method: str
    path: str
    user_id: Optional[str] = None
    body: Any = None


class RequestKind(Enum):
    CREATE = "create"
    LIST = "list"
    GET = "get"
    UPDATE = "update"
    DELETE = "delete"


# (method, path has id) -> kind
_ROUTES = {
    ("POST", False): RequestKind.CREATE,
    ("POST", True): RequestKind.CREATE,
    ("GET", False): RequestKind.LIST,
    ("GET", True): RequestKind.GET,
    ("PUT", True): RequestKind.UPDATE,
    ("DELETE", True): RequestKind.DELETE,
}

_ID_REQUIRED = {
    "PUT": "User ID is required for update",
    "DELETE": "User ID is required for deletion",
}


def resolve_kind(method: str, has_id: bool) -> RequestKind:
    kind = _ROUTES.get((method, has_id))
    if kind is not None:
        return kind
    if method in _ID_REQUIRED:
        raise ValidationError(_ID_REQUIRED[method])
    raise MethodNotAllowedError(f"Method {method} not allowed")


def parse_event(event: Any) -> ProfileRequest:
    """Normalize an API Gateway REST (v1) or HTTP API (v2) proxy event."""
    if not isinstance(event, dict):
        raise InternalError("Internal server error", "Invalid event structure")

    http = (event.get("requestContext") or {}).get("http") or {}
    method = event.get("httpMethod") or http.get("method")
    path = event.get("path") or event.get("rawPath")
    if not method or not path:
        raise InternalError("Internal server error", "Invalid event structure")

    user_id = ((event.get("pathParameters") or {}).get("id") or "").strip()

    body = event.get("body")
    if body and event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise ValidationError(
                "Invalid request body",
                [{"field": "body", "reason": "Body is not valid base64 UTF-8"}],
            )

    return ProfileRequest(method=method.upper(), path=path, user_id=user_id or None, body=body)


class ProfileHandler:
    """Performs one store operation per request and returns a proxy response."""

    def __init__(self, store: UserStore, clock: Callable[[], str] = utc_now_iso,
                 id_factory: Callable[[], str] = generate_user_id):
        self.store = store
        self.clock = clock
        self.id_factory = id_factory
        self._actions = {
            RequestKind.CREATE: self.create_user,
            RequestKind.LIST: self.list_users,
            RequestKind.GET: self.get_user,
            RequestKind.UPDATE: self.update_user,
            RequestKind.DELETE: self.delete_user,
        }

    def handle(self, request: ProfileRequest) -> Dict[str, Any]:
        kind = resolve_kind(request.method, request.user_id is not None)
        logger.debug("Dispatching %s", kind.value)
        return self._actions[kind](request)

    def create_user(self, request: ProfileRequest) -> Dict[str, Any]:
        body = parse_body(request.body)
        if body.get("userId") in (None, ""):
            body["userId"] = self.id_factory()

        user = validate_create(body)
        now = self.clock()
        user["createdAt"] = now
        user["updatedAt"] = now

        if self.store.get(user["userId"]) is not None:
            raise ConflictError("User already exists")

        self.store.put(user)
        logger.info("Created user %s", user["userId"])
        return _response(201, {"message": "User created successfully", "user": user})

    def get_user(self, request: ProfileRequest) -> Dict[str, Any]:
        user_id = require_user_id(request.user_id)
        user = self.store.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return _response(200, {"user": user})

    def list_users(self, request: ProfileRequest) -> Dict[str, Any]:
        users = self.store.scan_all()
        logger.info("Listed %d users", len(users))
        return _response(200, {"users": users})

    def update_user(self, request: ProfileRequest) -> Dict[str, Any]:
        user_id = require_user_id(request.user_id)
        changes = validate_update(parse_body(request.body))
        now = self.clock()

        current = self.store.get(user_id)
        if current is None:
            raise NotFoundError("User not found")

        # updatedAt must move forward even within the same millisecond.
        changes["updatedAt"] = later_than(now, current.get("updatedAt"))
        self.store.update(user_id, changes)
        logger.info("Updated user %s fields=%s", user_id, sorted(changes))
        return _response(200, {"message": "User updated successfully", "userId": user_id})

    def delete_user(self, request: ProfileRequest) -> Dict[str, Any]:
        user_id = require_user_id(request.user_id)
        if self.store.get(user_id) is None:
            raise NotFoundError("User not found")

        self.store.delete(user_id)
        logger.info("Deleted user %s", user_id)
        return _response(200, {"message": "User deleted successfully", "userId": user_id})


# ---------------------------
# Lambda entry point
# ---------------------------

_handler: Optional[ProfileHandler] = None


def _get_handler() -> ProfileHandler:
    global _handler
    if _handler is None:
        _handler = ProfileHandler(UserStore.from_env())
    return _handler


def handle_event(event: Any, get_handler: Callable[[], ProfileHandler] = _get_handler) -> Dict[str, Any]:
    """Run one proxy event through a handler; every outcome becomes a JSON response."""
    try:
        request = parse_event(event)
        logger.info(
            "Received %s %s userId=%s body_present=%s",
            request.method, request.path, request.user_id, bool(request.body),
        )
        return get_handler().handle(request)
    except ProfileError as exc:
        if exc.status_code >= 500:
            logger.error("Request failed: %s (%s)", exc.message, exc.details)
        else:
            logger.info("Request rejected with %d: %s", exc.status_code, exc.message)
        return exc.to_response()
    except Exception:
        logger.exception("Unhandled error in handler")
        return _response(500, {"error": "Internal server error"})


def lambda_handler(event, context):
    """
    API Gateway proxy entry point for /users and /users/{id}.
    The profile handler and its DynamoDB table are built on first use and reused.
    """
    return handle_event(event)
