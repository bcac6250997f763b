from flask import request, jsonify, send_file
import io
import logging
import numpy as np
from app.main import main_bp
from app.main.tangram.pose_engine import (
    DegenerateTransformError,
    GamePuzzleData,
    HomographyAdapter,
    OverlayVisualizer,
    PieceObservation,
    ValidationEngine,
    ValidationOptions,
    load_puzzle,
)
from app.main.tangram.pose_engine.puzzles import available_puzzles

logger = logging.getLogger(__name__)

# One engine per play session
engines_cache = {}
frames_cache = {}    # session -> (puzzle, last observations)
adapters_cache = {}  # session -> HomographyAdapter
difficulties = {}


def _parse_puzzle(value):
    if isinstance(value, str):
        return load_puzzle(value)
    if isinstance(value, dict):
        return GamePuzzleData.from_dict(value)
    raise ValueError("'puzzle' must be a puzzle name or a puzzle object")


def _engine_for(session, difficulty):
    engine = engines_cache.get(session)
    if engine is None or difficulties.get(session) != difficulty:
        engine = ValidationEngine(difficulty)
        engines_cache[session] = engine
        difficulties[session] = difficulty
    return engine


def _adapter_for(session, homography):
    matrix = np.asarray(homography, dtype=float)
    adapter = adapters_cache.get(session)
    if adapter is None or adapter.homography.shape != matrix.shape or \
            not np.allclose(adapter.homography, matrix):
        adapter = HomographyAdapter(matrix)
        adapters_cache[session] = adapter
    return adapter


@main_bp.route('/')
def index():
    return jsonify({
        'service': 'tangram-pose-engine',
        'puzzles': available_puzzles(),
    })


@main_bp.route('/api/frame', methods=['POST'])
def process_frame():
    """Validate one frame of observations for a session."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Expected a JSON object'}), 400

    try:
        session = str(data.get('session', 'default'))
        puzzle = _parse_puzzle(data['puzzle'])
        difficulty = str(data.get('difficulty', 'normal')).lower()
        options = ValidationOptions.from_dict(data.get('options'))
        now = float(data['now']) if data.get('now') is not None else None
        groups = data.get('groups')
        if groups is not None and not isinstance(groups, dict):
            raise ValueError("'groups' must map group ids to piece id lists")

        engine = _engine_for(session, difficulty)
        raw = data.get('observations', [])
        if data.get('homography') is not None:
            adapter = _adapter_for(session, data['homography'])
            observations = adapter.observations_from_detections(raw, now if now is not None else 0.0)
        else:
            observations = [PieceObservation.from_dict(obs) for obs in raw]
    except (KeyError, ValueError, TypeError) as e:
        return jsonify({'error': f'Invalid request: {e}'}), 400
    except DegenerateTransformError as e:
        logger.warning("Skipping frame for session %s: degenerate homography (%s)", session, e)
        return jsonify(engine.skip_frame().to_dict())

    try:
        result = engine.process(observations, puzzle, groups=groups, options=options, now=now)
    except Exception as e:
        logger.exception("Validation failed for session %s", session)
        return jsonify({'error': str(e)}), 500

    frames_cache[session] = (puzzle, observations)
    return jsonify(result.to_dict())


@main_bp.route('/api/puzzles')
def list_puzzles():
    return jsonify({'puzzles': available_puzzles()})


@main_bp.route('/api/puzzles/<name>')
def get_puzzle(name):
    try:
        puzzle = load_puzzle(name)
    except KeyError:
        return jsonify({'error': f'Unknown puzzle: {name}'}), 404
    return jsonify(puzzle.to_dict())


@main_bp.route('/api/sessions/<session>/groups/<gid>/mapping')
def get_mapping(session, gid):
    engine = engines_cache.get(session)
    if engine is None:
        return jsonify({'error': 'Unknown session'}), 404

    mapping = engine.mapping_for(gid)
    if mapping is None:
        return jsonify({'error': f'No mapping for group {gid}'}), 404
    return jsonify(mapping.to_dict())


@main_bp.route('/api/sessions/<session>/groups/<gid>/consumed')
def get_consumed(session, gid):
    engine = engines_cache.get(session)
    if engine is None:
        return jsonify({'error': 'Unknown session'}), 404
    return jsonify({'group_id': gid, 'consumed': sorted(engine.consumed_targets(gid))})


@main_bp.route('/api/sessions/<session>/groups/<gid>/targets/<tid>', methods=['DELETE'])
def unmark_target(session, gid, tid):
    engine = engines_cache.get(session)
    if engine is None:
        return jsonify({'error': 'Unknown session'}), 404

    engine.unmark_target_consumed(gid, tid)
    return jsonify({'success': True, 'consumed': sorted(engine.consumed_targets(gid))})


@main_bp.route('/api/sessions/<session>/groups/<gid>/pairs/<pid>', methods=['DELETE'])
def remove_pair(session, gid, pid):
    engine = engines_cache.get(session)
    if engine is None:
        return jsonify({'error': 'Unknown session'}), 404

    engine.remove_pair(gid, pid)
    return jsonify({'success': True, 'pairs': [list(p) for p in engine.mapping_service.validated_pairs(gid)]})


@main_bp.route('/api/sessions/<session>/groups/<gid>/overlay.png')
def get_overlay(session, gid):
    engine = engines_cache.get(session)
    if engine is None or session not in frames_cache:
        return jsonify({'error': 'Unknown session'}), 404

    puzzle, observations = frames_cache[session]
    visualizer = OverlayVisualizer()
    try:
        img = visualizer.render(engine, gid, puzzle, observations)
        png = visualizer.encode_png(img)
    except Exception as e:
        logger.exception("Overlay rendering failed for session %s", session)
        return jsonify({'error': str(e)}), 500

    return send_file(io.BytesIO(png), mimetype='image/png')


@main_bp.route('/api/sessions/<session>/reset', methods=['POST'])
def reset_session(session):
    engine = engines_cache.get(session)
    if engine is not None:
        engine.reset()
    frames_cache.pop(session, None)
    adapters_cache.pop(session, None)
    return jsonify({'success': True, 'session': session})
