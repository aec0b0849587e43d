# Copyright (c) 2025 sprouee
from dataclasses import asdict

from flask import Flask, Response, abort, jsonify, request

from groupwarden import config
from groupwarden.logging_config import log
from groupwarden.moderation.logger import format_records
from groupwarden.moderation.storage import delete_rule, export_rule, import_rule, load_activity, load_punishments
from groupwarden.security.data_protection import check_security_config

flask_app = Flask(__name__)

MAX_RECORDS_LIMIT = 200


def _require_key() -> None:
    provided_key = request.args.get("key")
    if not config.DOWNLOAD_KEY or provided_key != config.DOWNLOAD_KEY:
        abort(403)


@flask_app.route("/health")
def health():
    security = check_security_config()
    return jsonify({"status": "ok", "encryption_enabled": security["encryption_enabled"]})


@flask_app.route("/api/groups/<int(signed=True):group_id>/activity")
def group_activity(group_id: int):
    _require_key()
    counters = load_activity(group_id)
    ranked = sorted(counters.items(), key=lambda item: item[1].total, reverse=True)
    return jsonify(
        {
            "group_id": group_id,
            "members": [dict(user_id=user_id, **asdict(counter)) for user_id, counter in ranked],
        }
    )


@flask_app.route("/api/groups/<int(signed=True):group_id>/punishments")
def group_punishments(group_id: int):
    _require_key()
    try:
        limit = int(request.args.get("limit", 10))
    except ValueError:
        abort(400)
    limit = max(1, min(limit, MAX_RECORDS_LIMIT))

    user_id = request.args.get("user_id")
    if user_id is not None and not user_id.lstrip("-").isdigit():
        abort(400)

    records = load_punishments(group_id, limit, int(user_id) if user_id is not None else None)
    log.debug(f"Punishment records requested: {len(records)} entries")
    if request.args.get("format") == "text":
        return Response(format_records(records), mimetype="text/plain; charset=utf-8")
    return jsonify({"group_id": group_id, "records": [asdict(record) for record in records]})


@flask_app.route("/api/groups/<int(signed=True):group_id>/rules", methods=["GET"])
def get_group_rules(group_id: int):
    _require_key()
    exported = export_rule(group_id)
    if exported is None:
        abort(404)
    return Response(exported, mimetype="application/json; charset=utf-8")


@flask_app.route("/api/groups/<int(signed=True):group_id>/rules", methods=["PUT"])
def put_group_rules(group_id: int):
    """Заменить правила группы. Расписание перезапускается через подписчиков хранилища."""
    _require_key()
    try:
        rule = import_rule(group_id, request.get_data(as_text=True))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    log.info("Group rules replaced via web API")
    return jsonify({"group_id": rule.group_id, "enabled": rule.enabled})


@flask_app.route("/api/groups/<int(signed=True):group_id>/rules", methods=["DELETE"])
def delete_group_rules(group_id: int):
    _require_key()
    if not delete_rule(group_id):
        abort(404)
    return jsonify({"group_id": group_id, "deleted": True})


def run_web_server() -> None:
    flask_app.run(host=config.FLASK_HOST, port=config.FLASK_PORT)
