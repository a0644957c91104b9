from __future__ import annotations

import json

from flask import Response, current_app, jsonify, request

from ..services.ai_settings import (
    AISettingsError,
    build_dispatcher,
    cached_models,
    get_or_create_settings,
    refresh_models,
    settings_to_dict,
    update_key,
    update_local_api_url,
)
from ..services.generation import UnknownProviderError
from ..services.generation_service import GenerationJob, GenerationRequest, GenerationService, PromptRequest
from ..services.prompt_context import ContextBuildError
from ..services.prompt_parser import PromptParseError
from ..services.providers import ProviderError
from ..services.streaming import Complete, Failed, Token
from . import bp
from .forms import AISettingsForm, GenerateForm


def build_generation_service() -> GenerationService:
    settings = get_or_create_settings()
    return GenerationService.for_database(build_dispatcher(settings))


def _sessions():
    from .. import SESSIONS_EXTENSION

    return current_app.extensions[SESSIONS_EXTENSION]


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@bp.route("/prompts/<prompt_id>/preview", methods=["POST"])
async def preview_prompt(prompt_id: str):
    payload = request.get_json(silent=True) or {}
    try:
        prompt_request = PromptRequest.from_payload(payload, prompt_id=prompt_id)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    service = GenerationService.for_database()
    try:
        parsed = await service.preview(prompt_request)
    except ContextBuildError:
        current_app.logger.exception("Could not build context for prompt %s", prompt_id)
        return jsonify({"error": "We couldn't load the story data for this prompt."}), 500

    if not parsed.ok:
        return jsonify({"error": "prompt error", "detail": parsed.error}), 400
    return jsonify({"messages": [message.to_dict() for message in parsed.messages]})


@bp.route("/generate", methods=["POST"])
def generate():
    form = GenerateForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid generation request.", "fields": form.errors}), 400

    try:
        generation_request = GenerationRequest.from_payload(request.get_json(silent=True) or {})
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    app = current_app._get_current_object()
    sessions = _sessions()
    session_id = generation_request.session_id
    job = GenerationJob(app, generation_request, build_generation_service)
    sessions.start(session_id, job)
    job.start()

    try:
        opened = job.wait_until_open(timeout=app.config.get("AI_REQUEST_TIMEOUT"))
    except PromptParseError as exc:
        sessions.finish(session_id, job)
        return jsonify({"error": "prompt error", "detail": str(exc)}), 400
    except UnknownProviderError as exc:
        sessions.finish(session_id, job)
        return jsonify({"error": str(exc)}), 400
    except ProviderError as exc:
        sessions.finish(session_id, job)
        current_app.logger.warning("Provider %s rejected generation: %s", generation_request.provider, exc)
        return jsonify({"error": "generation failed", "detail": str(exc)}), 502
    except ContextBuildError:
        sessions.finish(session_id, job)
        current_app.logger.exception("Could not build context for generation")
        return jsonify({"error": "We couldn't load the story data for this prompt."}), 500
    except Exception:
        sessions.finish(session_id, job)
        current_app.logger.exception("Unexpected error while starting generation")
        return jsonify({"error": "generation failed"}), 500

    if not opened:
        job.abort()
        sessions.finish(session_id, job)
        return jsonify({"error": "generation failed", "detail": "The provider did not respond in time."}), 504

    if job.aborted:
        sessions.finish(session_id, job)
        return Response(status=204)

    def event_stream():
        try:
            for event in job.iter_events():
                if isinstance(event, Token):
                    yield _sse("token", {"text": event.text})
                elif isinstance(event, Complete):
                    yield _sse("complete", {})
                elif isinstance(event, Failed):
                    yield _sse("error", {"error": "generation failed", "detail": str(event.error)})
        finally:
            job.abort()
            sessions.finish(session_id, job)

    return Response(
        event_stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@bp.route("/generate/<session_id>/abort", methods=["POST"])
def abort_generation(session_id: str):
    if _sessions().abort(session_id):
        current_app.logger.info("Generation for session %s aborted by client", session_id)
    return Response(status=204)


@bp.route("/models", methods=["GET"])
async def list_models():
    provider = request.args.get("provider") or None
    refresh = request.args.get("refresh", "").lower() in ("1", "true", "yes")
    settings = get_or_create_settings()

    if provider and refresh:
        try:
            await refresh_models(settings, provider)
        except UnknownProviderError as exc:
            return jsonify({"error": str(exc)}), 400
        except ProviderError as exc:
            current_app.logger.warning("Refreshing %s models failed: %s", provider, exc)
            return jsonify({"error": "We couldn't fetch models from this provider.", "detail": str(exc)}), 502

    models = cached_models(settings, provider)
    return jsonify({"models": [model.to_dict() for model in models]})


@bp.route("/settings", methods=["GET"])
def get_settings():
    return jsonify(settings_to_dict(get_or_create_settings()))


@bp.route("/settings", methods=["PUT"])
async def update_settings():
    form = AISettingsForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid AI settings.", "fields": form.errors}), 400

    payload = request.get_json(silent=True) or {}
    settings = get_or_create_settings()
    warnings = []

    updates = [
        ("openai", lambda: update_key(settings, "openai", form.openai_key.data or "")),
        ("openrouter", lambda: update_key(settings, "openrouter", form.openrouter_key.data or "")),
        ("local", lambda: update_local_api_url(settings, form.local_api_url.data or "")),
    ]
    fields = {"openai": "openai_key", "openrouter": "openrouter_key", "local": "local_api_url"}
    for provider, apply in updates:
        if fields[provider] not in payload:
            continue
        try:
            await apply()
        except AISettingsError as exc:
            return jsonify({"error": str(exc)}), 400
        except ProviderError as exc:
            current_app.logger.warning("Saved %s settings but model refresh failed: %s", provider, exc)
            warnings.append(f"Could not refresh {provider} models: {exc}")

    response = settings_to_dict(settings)
    if warnings:
        response["warnings"] = warnings
    return jsonify(response)
