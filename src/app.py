"""
Flask JSON API for the draw engine.
"""
import os
import logging
from flask import Flask, request, jsonify
from draw_engine.config import load_config
from draw_engine.errors import ConflictError, NotFoundError, PartialFailureError, StoreError, ValidationError
from draw_engine.service import TournamentService
from draw_engine.store import YamlStore

app = Flask(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.environ.get('DRAW_ENGINE_DATA_DIR', os.path.join(BASE_DIR, 'data'))

CONFIG = load_config()
app.logger.setLevel(getattr(logging, str(CONFIG.get('log_level', 'INFO')).upper(), logging.INFO))


def get_store():
    """Store configured on the app, else the YAML store under DATA_DIR."""
    store = app.config.get('STORE')
    if store is None:
        store = YamlStore(DATA_DIR, CONFIG['max_batch_size'])
    return store


def get_service():
    return TournamentService(get_store(), config=app.config.get('ENGINE_CONFIG') or CONFIG)


def _json_body():
    return request.get_json(silent=True) or {}


def _category():
    return request.args.get('category') or _json_body().get('category')


# Error translation

def _error_response(error, status):
    return jsonify({'error': str(error)}), status


@app.errorhandler(NotFoundError)
def handle_not_found(error):
    app.logger.info(f'Not found: {error}')
    return _error_response(error, 404)


@app.errorhandler(ValidationError)
def handle_validation(error):
    app.logger.info(f'Rejected request: {error}')
    return _error_response(error, 400)


@app.errorhandler(ConflictError)
def handle_conflict(error):
    app.logger.info(f'Conflict: {error}')
    return _error_response(error, 409)


@app.errorhandler(PartialFailureError)
def handle_partial_failure(error):
    app.logger.error(f'Partial failure in {error.operation} after {error.completed_steps} step(s): {error.cause}')
    return _error_response(error, 500)


@app.errorhandler(StoreError)
def handle_store_error(error):
    app.logger.error(f'Store unavailable: {error}')
    return _error_response(error, 503)


def _int_field(data, key, default=None):
    value = data.get(key, default)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be an integer")


# Group stage

@app.route('/api/tournaments/<tournament_id>/groups/assign', methods=['POST'])
def api_assign_groups(tournament_id):
    data = _json_body()
    group_count = _int_field(data, 'group_count')
    if group_count is None:
        raise ValidationError("'group_count' is required")
    groups = get_service().assign_groups(tournament_id, group_count, _category())
    return jsonify({'success': True, 'groups': groups})


@app.route('/api/tournaments/<tournament_id>/groups/matches', methods=['POST'])
def api_generate_group_matches(tournament_id):
    created = get_service().generate_group_matches(tournament_id, _category())
    return jsonify({'success': True, 'matches_created': created})


@app.route('/api/tournaments/<tournament_id>/groups/<group_name>/finalize', methods=['POST'])
def api_finalize_group(tournament_id, group_name):
    qualifiers_count = _int_field(_json_body(), 'qualifiers_count')
    get_service().finalize_group(tournament_id, group_name, qualifiers_count, _category())
    return jsonify({'success': True})


@app.route('/api/tournaments/<tournament_id>/groups/<group_name>/unfinalize', methods=['POST'])
def api_unfinalize_group(tournament_id, group_name):
    get_service().unfinalize_group(tournament_id, group_name, _category())
    return jsonify({'success': True})


@app.route('/api/tournaments/<tournament_id>/groups/<group_name>/players', methods=['GET', 'POST'])
def api_group_players(tournament_id, group_name):
    service = get_service()
    if request.method == 'GET':
        return jsonify({'players': service.get_group_players(tournament_id, group_name, _category())})
    player_id = _json_body().get('player_id')
    if not player_id:
        raise ValidationError("'player_id' is required")
    created = service.add_player_to_group(tournament_id, group_name, player_id, _category())
    return jsonify({'success': True, 'matches_created': created})


@app.route('/api/tournaments/<tournament_id>/groups/<group_name>/players/<player_id>', methods=['DELETE'])
def api_remove_group_player(tournament_id, group_name, player_id):
    deleted = get_service().remove_player_from_group(tournament_id, group_name, player_id, _category())
    return jsonify({'success': True, 'matches_deleted': deleted})


@app.route('/api/tournaments/<tournament_id>/players/unassigned', methods=['GET'])
def api_players_without_group(tournament_id):
    return jsonify({'players': get_service().get_players_without_group(tournament_id, _category())})


@app.route('/api/tournaments/<tournament_id>/players/seeds', methods=['POST'])
def api_auto_seed(tournament_id):
    seeded = get_service().auto_seed_players(tournament_id, _category())
    return jsonify({'success': True, 'players_seeded': seeded})


@app.route('/api/tournaments/<tournament_id>/players/<player_id>/seed', methods=['POST'])
def api_update_seed(tournament_id, player_id):
    seed = _int_field(_json_body(), 'seed')
    get_service().update_player_seed(tournament_id, player_id, seed)
    return jsonify({'success': True})


@app.route('/api/tournaments/<tournament_id>/standings', methods=['GET'])
def api_standings(tournament_id):
    service = get_service()
    category = _category()
    return jsonify({
        'standings': service.get_standings(tournament_id, category),
        'all_groups_finalized': service.are_all_groups_finalized(tournament_id, category),
    })


@app.route('/api/tournaments/<tournament_id>/qualifiers', methods=['GET'])
def api_qualifiers(tournament_id):
    return jsonify({'qualifiers': get_service().get_qualifiers(tournament_id, _category())})


@app.route('/api/tournaments/<tournament_id>/reset', methods=['POST'])
def api_reset_group_stage(tournament_id):
    get_service().reset_group_stage(tournament_id, _category())
    return jsonify({'success': True})


# Bracket

@app.route('/api/tournaments/<tournament_id>/bracket', methods=['GET', 'POST', 'DELETE'])
def api_bracket(tournament_id):
    service = get_service()
    category = _category()
    if request.method == 'GET':
        return jsonify(service.get_bracket(tournament_id, category))
    if request.method == 'DELETE':
        deleted = service.delete_bracket(tournament_id, category)
        return jsonify({'success': True, 'matches_deleted': deleted})

    qualified = _json_body().get('qualified_players')
    if qualified is None:
        qualified = service.get_qualifiers(tournament_id, category)
    result = service.generate_bracket(tournament_id, qualified, category)
    return jsonify({'success': True, **result})


@app.route('/api/tournaments/<tournament_id>/matches/<match_id>/result', methods=['POST'])
def api_record_result(tournament_id, match_id):
    data = _json_body()
    match = get_service().record_match_result(
        tournament_id, match_id,
        data.get('sets') or [],
        winner_id=data.get('winner_id'),
        is_withdrawal=bool(data.get('is_withdrawal')),
    )
    return jsonify({'success': True, 'match': match})


# Rankings

@app.route('/api/rankings/recalculate', methods=['POST'])
def api_recalculate_rankings():
    data = _json_body()
    totals = get_service().recalculate_rankings(data.get('club_id'), data.get('job_id'))
    return jsonify({'success': True, 'totals': totals})


if __name__ == '__main__':
    app.run(debug=True, port=5000)
