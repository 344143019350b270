"""
Flask Routes - Slides workflow, Manus webhook and conversation endpoints
"""

import logging
import threading
from datetime import datetime, timezone

from flask import Blueprint, Response, request, jsonify, g, current_app

from app.auth import require_auth
from app.conversations import ConversationSync, SyncError
from app.database import StoreError
from app.protocol import InvalidTransitionError, STATUS_ERROR, verify_signature, validate_prompt

logger = logging.getLogger(__name__)

main_bp = Blueprint('main', __name__)
api_bp = Blueprint('api', __name__)

SIGNATURE_HEADER = 'x-manus-signature'


def _error(message: str, code: int):
    return jsonify({'success': False, 'error': message}), code


def _internal_error():
    return _error('Internal server error', 500)


@main_bp.route('/health')
def health():
    """Health check endpoint."""
    return jsonify({
        'status': 'healthy',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'version': '1.0.0'
    })


# ----------------------------------------------------------------------
# Manus webhook
# ----------------------------------------------------------------------

@api_bp.route('/slides/manus-webhook', methods=['POST'])
def manus_webhook():
    """Receive Manus task events."""
    try:
        raw_body = request.get_data()
        signature_error = verify_signature(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            current_app.config.get('MANUS_WEBHOOK_SECRET')
        )
        if signature_error:
            logger.warning(f"Rejected webhook: {signature_error}")
            return _error(signature_error, 401)

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error('Invalid JSON body', 400)

        body, code = current_app.slides_protocol.handle_event(payload)
        return jsonify(body), code

    except Exception as e:
        logger.exception(f"Error in webhook endpoint: {e}")
        return _internal_error()


# ----------------------------------------------------------------------
# Slides workflow
# ----------------------------------------------------------------------

@api_bp.route('/slides/workflow/<presentation_id>', methods=['GET'])
@require_auth
def workflow_status(presentation_id: str):
    """Current status of one of the caller's presentations."""
    try:
        data = current_app.slides_protocol.get_workflow_status(presentation_id, g.user_id)
    except Exception as e:
        logger.exception(f"Error fetching workflow status: {e}")
        return _internal_error()

    if data is None:
        return _error('Presentation not found', 404)
    return jsonify({'success': True, 'data': data})


def _start_polling(task_id: str, user_id: str, presentation_id: str = None) -> bool:
    poller = current_app.task_poller
    if not current_app.config.get('MANUS_ENABLE_POLLING') or poller is None:
        return False
    return poller.start(task_id, user_id, presentation_id)


@api_bp.route('/slides/workflow/generate', methods=['POST'])
@require_auth
def generate_slides():
    """Create a presentation and start a Manus slides task."""
    data = request.get_json(silent=True) or {}
    prompt_error = validate_prompt(data.get('prompt'))
    if prompt_error:
        return _error(prompt_error, 400)

    try:
        started = current_app.slides_protocol.start_slides_generation(
            user_id=g.user_id,
            prompt=data['prompt'].strip(),
            title=data.get('title'),
            format=data.get('format') or '16:9',
            theme=data.get('theme') or 'default'
        )
    except Exception as e:
        logger.exception(f"Error starting slides generation: {e}")
        return _error('Failed to start generation', 500)

    polling = _start_polling(started['task_id'], g.user_id, started['presentation_id'])
    return jsonify({
        'success': True,
        'data': {
            'presentationId': started['presentation_id'],
            'taskId': started['task_id'],
            'status': started['status'],
            'polling': polling
        }
    })


@api_bp.route('/slides/workflow/generate-topics', methods=['POST'])
@require_auth
def generate_topics():
    """Start a Manus topics task, optionally for an existing presentation."""
    data = request.get_json(silent=True) or {}
    prompt_error = validate_prompt(data.get('prompt'))
    if prompt_error:
        return _error(prompt_error, 400)

    try:
        started = current_app.slides_protocol.start_topics_generation(
            user_id=g.user_id,
            prompt=data['prompt'].strip(),
            presentation_id=data.get('presentationId')
        )
    except LookupError:
        return _error('Presentation not found', 404)
    except InvalidTransitionError as e:
        return _error(str(e), 409)
    except Exception as e:
        logger.exception(f"Error starting topics generation: {e}")
        return _error('Failed to start topics generation', 500)

    polling = _start_polling(started['task_id'], g.user_id, started['presentation_id'])
    return jsonify({
        'success': True,
        'data': {
            'taskId': started['task_id'],
            'presentationId': started['presentation_id'],
            'status': started['status'],
            'polling': polling
        }
    })


def run_pipeline_in_background(app, presentation_id: str, user_id: str, prompt: str) -> None:
    """Run the presentation pipeline in a background thread."""
    with app.app_context():
        try:
            logger.info(f"Starting pipeline for presentation {presentation_id}")
            app.presentation_pipeline.run(presentation_id, user_id, prompt)
        except Exception as e:
            logger.exception(f"Pipeline error for presentation {presentation_id}: {e}")
            try:
                app.slides_protocol.move_presentation(presentation_id, STATUS_ERROR)
            except StoreError as store_error:
                logger.error(f"Could not mark presentation {presentation_id} as failed: {store_error}")
            app.socket_relay.emit_generation_error(user_id, presentation_id, 'Pipeline failed')


@api_bp.route('/slides/workflow/pipeline', methods=['POST'])
@require_auth
def start_pipeline():
    """Generate topics and slides with the local agent pipeline."""
    data = request.get_json(silent=True) or {}
    prompt_error = validate_prompt(data.get('prompt'))
    if prompt_error:
        return _error(prompt_error, 400)

    prompt = data['prompt'].strip()
    try:
        presentation = current_app.presentation_pipeline.create_presentation(
            user_id=g.user_id,
            prompt=prompt,
            title=data.get('title'),
            format=data.get('format') or '16:9',
            theme=data.get('theme') or 'default'
        )
    except Exception as e:
        logger.exception(f"Error creating presentation: {e}")
        return _internal_error()

    # current_app is a proxy, the thread needs the real object
    app = current_app._get_current_object()
    thread = threading.Thread(
        target=run_pipeline_in_background,
        args=(app, presentation['id'], g.user_id, prompt)
    )
    thread.daemon = True
    thread.start()

    return jsonify({
        'success': True,
        'data': {
            'presentationId': presentation['id'],
            'status': presentation['status']
        }
    }), 202


# ----------------------------------------------------------------------
# Conversations
# ----------------------------------------------------------------------

@api_bp.route('/conversations/<conversation_id>/export', methods=['GET'])
@require_auth
def export_conversation(conversation_id: str):
    """Download a conversation as JSON."""
    sync = ConversationSync(current_app.store, g.user_id)
    try:
        sync.load()
        exported = sync.export_conversation(conversation_id)
    except KeyError:
        return _error('Conversation not found', 404)
    except SyncError as e:
        logger.error(f"Export failed: {e}")
        return _internal_error()

    return Response(
        exported,
        mimetype='application/json',
        headers={'Content-Disposition': f'attachment; filename="conversation-{conversation_id}.json"'}
    )


@api_bp.route('/conversations/import', methods=['POST'])
@require_auth
def import_conversation():
    """Create a conversation from an exported JSON document."""
    data = request.get_json(silent=True)
    if data is None:
        return _error('Invalid JSON body', 400)

    sync = ConversationSync(current_app.store, g.user_id)
    try:
        conversation = sync.import_conversation(data)
    except ValueError as e:
        return _error(str(e), 400)
    except SyncError as e:
        logger.error(f"Import failed: {e}")
        return _internal_error()

    return jsonify({'success': True, 'data': conversation}), 201
