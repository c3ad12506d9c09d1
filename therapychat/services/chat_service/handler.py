"""Therapy Chat HTTP handler - the polling/action surface.

One endpoint, ``/api/therapy-chat``, dispatches on ``action``. Parameters
are read from the query string, form body or JSON body alike so every
client type can call every action.

The caller is identified by the ``X-User-Id`` header (set by the
authenticating gateway) and resolved against the store; the resulting
Actor is passed explicitly to every operation.
"""
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, Response, current_app, jsonify, request

from therapychat.shared.errors import TherapyChatError, ValidationError
from therapychat.shared.models import Actor, ChatMode, ConversationStatus, RiskLevel
from therapychat.shared.utils import configure_pii_salt, hash_pii

from .engine import TherapyChatEngine, build_engine

logger = logging.getLogger(__name__)

ActionHandler = Callable[[TherapyChatEngine, Actor, Dict[str, Any]], Any]

ACTIONS: Dict[str, ActionHandler] = {}


def action(name: str):
    def register(func: ActionHandler) -> ActionHandler:
        ACTIONS[name] = func
        return func
    return register


def create_app(engine: Optional[TherapyChatEngine] = None) -> Flask:
    app = Flask(__name__)
    app.config["ENGINE"] = engine or build_engine()

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "healthy", "service": "therapy-chat"}), 200

    @app.route("/ready", methods=["GET"])
    def ready():
        status = current_app.config["ENGINE"].store.health_check()
        if not status.get("healthy"):
            return jsonify({"status": "not_ready", "store": status}), 503
        return jsonify({"status": "ready"}), 200

    @app.route("/api/therapy-chat", methods=["GET", "POST"])
    def dispatch():
        return _dispatch(current_app.config["ENGINE"])

    return app


def _dispatch(engine: TherapyChatEngine):
    params: Dict[str, Any] = dict(request.values.items())
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        params.update(body)

    name = params.get("action")
    handler = ACTIONS.get(name)
    if handler is None:
        logger.warning("UNKNOWN_ACTION", extra={"action": str(name)[:64]})
        return jsonify({"error": f"Unknown action: {name}", "code": "unknown_action"}), 400

    actor = _resolve_actor(engine)
    if actor is None:
        return jsonify({"error": "Authentication required", "code": "unauthenticated"}), 401

    try:
        result = handler(engine, actor, params)
    except TherapyChatError as e:
        logger.warning(
            "ACTION_REJECTED",
            extra={
                "action": name,
                "code": e.code,
                "actor_id_hash": hash_pii(actor.user_id),
            }
        )
        return jsonify(e.to_dict()), e.status_code
    except Exception as e:
        logger.error(
            "ACTION_FAILED",
            extra={
                "action": name,
                "error": str(e),
                "error_type": type(e).__name__,
            }
        )
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500

    if isinstance(result, Response):
        return result
    return jsonify(result), 200


def _resolve_actor(engine: TherapyChatEngine) -> Optional[Actor]:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    user = engine.store.get_user(user_id)
    if user is None:
        logger.warning("UNKNOWN_CALLER", extra={"actor_id_hash": hash_pii(user_id)})
        return None
    return user.as_actor()


# Parameter helpers

def _required(params: Dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value is None or value == "":
        raise ValidationError(f"Missing required parameter: {key}")
    return value


def _int(params: Dict[str, Any], key: str) -> Optional[int]:
    value = params.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Parameter {key} must be an integer")


def _bool(params: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = params.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def _enum(enum_cls, params: Dict[str, Any], key: str):
    value = _required(params, key)
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {key}: {value} (expected one of {allowed})")


def _conversation_id(
    engine: TherapyChatEngine,
    actor: Actor,
    params: Dict[str, Any],
    warnings: Optional[List[str]] = None,
) -> str:
    """Explicit id, or the patient's own conversation (created on first use)."""
    conversation_id = params.get("conversation_id")
    if conversation_id:
        return str(conversation_id)
    if actor.is_patient:
        conversation, _ = engine.state.get_or_create(actor, warnings=warnings)
        return conversation.conversation_id
    raise ValidationError("Missing required parameter: conversation_id")


def _with_warnings(payload: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    if warnings:
        payload["warnings"] = list(warnings)
    return payload


def _conversation_payload(engine: TherapyChatEngine, conversation) -> Dict[str, Any]:
    payload = conversation.to_dict()
    notice = None
    if conversation.is_closed:
        notice = engine.chat_config.closed_notice
    elif conversation.is_paused:
        notice = engine.chat_config.paused_notice
    elif conversation.blocked:
        notice = engine.safety_config.blocked_message
    payload["notice"] = notice
    return payload


# Conversation

@action("start_conversation")
def start_conversation(engine, actor, params):
    warnings: List[str] = []
    conversation, created = engine.state.get_or_create(actor, params.get("patient_id"), warnings)
    return _with_warnings(
        {"conversation": _conversation_payload(engine, conversation), "created": created}, warnings
    )


@action("get_conversation")
def get_conversation(engine, actor, params):
    warnings: List[str] = []
    conversation = engine.guard.require(actor, _conversation_id(engine, actor, params, warnings))
    return _with_warnings({
        "conversation": _conversation_payload(engine, conversation),
        "polling_interval": engine.chat_config.polling_interval,
        "tagging_enabled": engine.chat_config.tagging_enabled,
        "tag_reasons": [r.to_dict() for r in engine.chat_config.tag_reasons],
    }, warnings)


@action("set_risk_level")
def set_risk_level(engine, actor, params):
    return engine.state.set_risk_level(
        actor, _required(params, "conversation_id"), _enum(RiskLevel, params, "risk_level")
    ).to_dict()


@action("set_status")
def set_status(engine, actor, params):
    return engine.state.set_status(
        actor, _required(params, "conversation_id"), _enum(ConversationStatus, params, "status")
    ).to_dict()


@action("set_mode")
def set_mode(engine, actor, params):
    return engine.state.set_mode(
        actor, _required(params, "conversation_id"), _enum(ChatMode, params, "mode")
    ).to_dict()


@action("toggle_ai")
def toggle_ai(engine, actor, params):
    if "enabled" not in params:
        raise ValidationError("Missing required parameter: enabled")
    return engine.state.set_ai_enabled(
        actor, _required(params, "conversation_id"), _bool(params, "enabled")
    ).to_dict()


# Messages

@action("send_message")
def send_message(engine, actor, params):
    warnings: List[str] = []
    conversation_id = _conversation_id(engine, actor, params, warnings)
    text = params.get("message")
    if actor.is_patient:
        outcome = engine.router.submit_patient_message(actor, conversation_id, text)
    else:
        outcome = engine.router.submit_therapist_message(actor, conversation_id, text)
    outcome.warnings[:0] = warnings
    return outcome.to_dict()


@action("tag_therapist")
def tag_therapist(engine, actor, params):
    warnings: List[str] = []
    outcome = engine.router.tag_therapist(
        actor,
        _conversation_id(engine, actor, params, warnings),
        _required(params, "reason"),
        params.get("note"),
    )
    outcome.warnings[:0] = warnings
    return outcome.to_dict()


def _message_change_payload(engine: TherapyChatEngine, change) -> Dict[str, Any]:
    return _with_warnings(
        {"message": engine.router.render([change.message])[0], "changed": change.changed},
        change.warnings,
    )


@action("edit_message")
def edit_message(engine, actor, params):
    message_id = _int(params, "message_id")
    if message_id is None:
        raise ValidationError("Missing required parameter: message_id")
    change = engine.router.edit_message(actor, message_id, params.get("message"))
    return _message_change_payload(engine, change)


@action("delete_message")
def delete_message(engine, actor, params):
    message_id = _int(params, "message_id")
    if message_id is None:
        raise ValidationError("Missing required parameter: message_id")
    change = engine.router.delete_message(actor, message_id)
    return _message_change_payload(engine, change)


@action("get_messages")
def get_messages(engine, actor, params):
    """Fetch a page, then mark read only what this page contained."""
    conversation_id = _conversation_id(engine, actor, params)
    messages = engine.router.list_messages(
        actor, conversation_id, _int(params, "after_id"), _int(params, "limit")
    )
    marked = 0
    if messages and _bool(params, "mark_read", default=True):
        up_to = max(m.message_id for m in messages)
        marked = engine.tracker.mark_read(actor, conversation_id, up_to)["marked"]
    return {
        "conversation_id": conversation_id,
        "messages": engine.router.render(messages),
        "latest_message_id": messages[-1].message_id if messages else _int(params, "after_id"),
        "marked_read": marked,
    }


@action("get_therapists")
def get_therapists(engine, actor, params):
    conversation = engine.guard.require(actor, _conversation_id(engine, actor, params))
    _, therapists = engine.store.roster_for(conversation.patient_id)
    return {"therapists": [{"user_id": t.user_id, "name": t.name} for t in therapists]}


# Polling and unread state

@action("check_updates")
def check_updates(engine, actor, params):
    return engine.tracker.check_updates(
        actor, _conversation_id(engine, actor, params), _int(params, "last_message_id")
    )


@action("get_unread_counts")
def get_unread_counts(engine, actor, params):
    return engine.tracker.get_unread_counts(actor)


@action("mark_messages_read")
def mark_messages_read(engine, actor, params):
    return engine.tracker.mark_read(
        actor, _conversation_id(engine, actor, params), _int(params, "up_to_message_id")
    )


@action("list_alerts")
def list_alerts(engine, actor, params):
    alerts = engine.tracker.list_alerts(
        actor, params.get("conversation_id") or None, _bool(params, "unread_only")
    )
    return {"alerts": [a.to_dict() for a in alerts]}


@action("mark_alert_read")
def mark_alert_read(engine, actor, params):
    return {"marked": engine.tracker.mark_alert_read(actor, _required(params, "alert_id"))}


@action("mark_all_alerts_read")
def mark_all_alerts_read(engine, actor, params):
    return engine.tracker.mark_all_alerts_read(actor, params.get("conversation_id") or None)


@action("list_patients")
def list_patients(engine, actor, params):
    return {"patients": engine.tracker.list_patients(actor, params.get("group_id") or None)}


@action("get_stats")
def get_stats(engine, actor, params):
    return engine.tracker.stats(actor, params.get("group_id") or None)


# Notes and summaries

@action("get_notes")
def get_notes(engine, actor, params):
    notes = engine.notes.list_notes(actor, _required(params, "conversation_id"))
    return {"notes": [n.to_dict() for n in notes]}


@action("add_note")
def add_note(engine, actor, params):
    return engine.notes.add_note(
        actor, _required(params, "conversation_id"), params.get("content")
    ).to_dict()


@action("edit_note")
def edit_note(engine, actor, params):
    return engine.notes.edit_note(actor, _required(params, "note_id"), params.get("content")).to_dict()


@action("delete_note")
def delete_note(engine, actor, params):
    return engine.notes.delete_note(actor, _required(params, "note_id")).to_dict()


@action("generate_summary")
def generate_summary(engine, actor, params):
    return engine.notes.generate_summary(
        actor, _required(params, "conversation_id"), _bool(params, "save")
    )


# Drafts

@action("get_draft")
def get_draft(engine, actor, params):
    draft = engine.drafts.get_active(actor, _required(params, "conversation_id"))
    return {"draft": draft.to_dict() if draft else None}


@action("create_draft")
def create_draft(engine, actor, params):
    return engine.drafts.create(actor, _required(params, "conversation_id")).to_dict()


@action("edit_draft")
def edit_draft(engine, actor, params):
    return engine.drafts.edit(actor, _required(params, "draft_id"), params.get("text")).to_dict()


@action("regenerate_draft")
def regenerate_draft(engine, actor, params):
    return engine.drafts.regenerate(actor, _required(params, "draft_id")).to_dict()


@action("undo_draft")
def undo_draft(engine, actor, params):
    return engine.drafts.undo(actor, _required(params, "draft_id")).to_dict()


@action("send_draft")
def send_draft(engine, actor, params):
    return engine.drafts.send(actor, _required(params, "draft_id")).to_dict()


@action("discard_draft")
def discard_draft(engine, actor, params):
    return engine.drafts.discard(actor, _required(params, "draft_id")).to_dict()


# Export

@action("export_csv")
def export_csv(engine, actor, params):
    warnings: List[str] = []
    filename, content = engine.exporter.export_csv(
        actor,
        scope=params.get("scope") or "all",
        conversation_id=params.get("conversation_id") or None,
        group_id=params.get("group_id") or None,
        warnings=warnings,
    )
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    if warnings:
        headers["X-Warnings"] = ",".join(warnings)
    return Response(content, mimetype="text/csv", headers=headers)


# Configure PII salt from environment
configure_pii_salt(os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars"))

app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    port = int(os.getenv("PORT", "8004"))
    app.run(host="0.0.0.0", port=port, debug=False)
