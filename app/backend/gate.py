"""Request-time lock gate.

Every request is classified by path first. Public paths always pass; the
rest pass only while PIN protection is off or the service holds a derived
key. The gate reads shared state but never changes it.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from flask import Flask, jsonify, request

log = logging.getLogger("pinnotes.gate")


class PathClass(enum.Enum):
    PUBLIC = "public"
    PROTECTED = "protected"


@dataclass(frozen=True)
class PathRule:
    pattern: str
    prefix: bool
    path_class: PathClass = PathClass.PUBLIC

    def matches(self, path: str) -> bool:
        if self.prefix:
            return path.startswith(self.pattern)
        return path == self.pattern


# Evaluated top to bottom, first match wins.
DEFAULT_RULES: Tuple[PathRule, ...] = (
    PathRule("/api/security", prefix=True),   # unlock/lock/status must work while locked
    PathRule("/static", prefix=True),
    PathRule("/", prefix=False),              # renders the lock prompt
    PathRule("/security", prefix=False),
    PathRule("/favicon.ico", prefix=False),
)


class PathClassifier:
    def __init__(self, rules: Sequence[PathRule] = DEFAULT_RULES,
                 default: PathClass = PathClass.PROTECTED):
        self.rules = tuple(rules)
        self.default = default

    def classify(self, path: str) -> PathClass:
        for rule in self.rules:
            if rule.matches(path):
                return rule.path_class
        return self.default


_default_classifier = PathClassifier()


def classify(path: str) -> PathClass:
    return _default_classifier.classify(path)


class DenyReason(enum.Enum):
    PIN_REQUIRED = "pin_required"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenyReason] = None


ALLOW = AccessDecision(True)
DENY_PIN_REQUIRED = AccessDecision(False, DenyReason.PIN_REQUIRED)

PIN_REQUIRED_BODY: Dict[str, Any] = {
    "success": False,
    "message": "PIN required. Please unlock first.",
    "locked": True,
}


def decide(path: str, security_config: Any, unlock_state: Any,
           classifier: PathClassifier = _default_classifier) -> AccessDecision:
    """``security_config`` needs ``pin_enabled``; ``unlock_state`` needs ``is_unlocked()``."""
    if classifier.classify(path) is PathClass.PUBLIC:
        return ALLOW
    return _decide_protected(security_config, unlock_state)


def _decide_protected(security_config: Any, unlock_state: Any) -> AccessDecision:
    if not security_config.pin_enabled:
        return ALLOW
    if unlock_state.is_unlocked():
        return ALLOW
    return DENY_PIN_REQUIRED


def denial_response():
    return jsonify(PIN_REQUIRED_BODY), 401


class AccessGate:
    """Binds ``decide`` to live state and to a Flask app.

    ``config_source`` returns the current SecurityConfig snapshot. Any
    exception while reading state denies the request.
    """

    def __init__(self, config_source: Callable[[], Any], unlock_state: Any,
                 classifier: Optional[PathClassifier] = None):
        self.config_source = config_source
        self.unlock_state = unlock_state
        self.classifier = classifier or _default_classifier

    def check(self, path: str) -> AccessDecision:
        # Classified here, before the try, so public paths never read state.
        if self.classifier.classify(path) is PathClass.PUBLIC:
            return ALLOW
        try:
            return _decide_protected(self.config_source(), self.unlock_state)
        except Exception:
            log.exception("Security state unreadable, denying", extra={
                "event": "gate_state_unreadable", "extra_data": {"path": path}})
            return DENY_PIN_REQUIRED

    def before_request(self):
        decision = self.check(request.path)
        if decision.allowed:
            return None
        log.info("Access denied", extra={"event": "access_denied", "extra_data": {
            "path": request.path, "method": request.method, "reason": decision.reason.value}})
        return denial_response()

    def install(self, app: Flask) -> None:
        app.before_request(self.before_request)
