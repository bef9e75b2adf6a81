from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from scoreboard.main import app
from scoreboard.service import ScoreboardService

D = "d" * 32


@pytest.fixture
def client(service):
    app.state.service = service
    try:
        yield TestClient(app)
    finally:
        app.state.service = None


@pytest.fixture
def strict_client(settings, engine, remote, clock):
    tight = replace(settings, rate_limit_submit=2, rate_limit_ip=3, rate_limit_read=2)
    svc = ScoreboardService(tight, engine, remote, clock=clock)
    app.state.service = svc
    try:
        yield TestClient(app)
    finally:
        app.state.service = None
        svc.close()


def test_health_and_cache_stats(client):
    r = client.get('/health')
    assert r.status_code == 200
    body = r.json()
    assert body['success'] is True
    assert body['data']['status'] == 'ok'
    assert 'X-Request-ID' in r.headers

    r2 = client.get('/api/cache/stats')
    assert r2.status_code == 200
    assert r2.json()['data']['cache_stats']['mode'] == 'tiered'


def test_submit_then_stats_then_ranking(client):
    r = client.post('/api/game/submit', json={'deviceId': D, 'score': 500})
    assert r.status_code == 200
    assert r.json()['data']['isNewBest'] is True
    assert r.json()['data']['bestScore'] == 500
    assert r.json()['data']['recordId']

    r = client.post('/api/game/submit', json={'deviceId': D, 'score': 300})
    assert r.json()['data'] == {'recordId': '', 'isNewBest': False, 'bestScore': 500}

    stats = client.get(f'/api/game/stats/{D}').json()['data']
    assert stats['bestScore'] == 500
    assert stats['rank'] == 1
    assert stats['deviceId'] == D

    ranking = client.get('/api/game/ranking', params={'type': 'all', 'limit': 10}).json()['data']
    assert ranking['type'] == 'all'
    assert ranking['cached'] is False
    assert ranking['rankings'][0] == {
        'deviceId': D, 'score': 500, 'rank': 1, 'timestamp': ranking['rankings'][0]['timestamp'],
    }
    again = client.get('/api/game/ranking', params={'type': 'all', 'limit': 10}).json()['data']
    assert again['cached'] is True


@pytest.mark.parametrize('payload', [
    {'deviceId': 'xyz', 'score': 1},
    {'deviceId': D.upper(), 'score': 1},
    {'deviceId': D, 'score': -5},
    {'deviceId': D, 'score': 1000000},
    {'deviceId': D, 'score': '12'},
    {'deviceId': D},
])
def test_submit_validation(client, payload):
    r = client.post('/api/game/submit', json=payload)
    assert r.status_code == 400
    assert r.json()['success'] is False


def test_ranking_param_validation(client):
    assert client.get('/api/game/ranking', params={'type': 'daily'}).status_code == 400
    assert client.get('/api/game/ranking', params={'limit': 0}).status_code == 400
    assert client.get('/api/game/ranking', params={'limit': 101}).status_code == 400
    r = client.get('/api/game/ranking', params={'type': 'weekly'})
    assert r.status_code == 200
    assert r.json()['data']['rankings'] == []


def test_stats_and_history_not_found(client):
    r = client.get(f'/api/game/stats/{"e" * 32}')
    assert r.status_code == 404
    assert r.json()['error']['code'] == 'DEVICE_NOT_FOUND'

    r = client.get(f'/api/game/history/{"e" * 32}')
    assert r.status_code == 404
    assert r.json()['error']['code'] == 'NO_RECORDS_FOUND'

    assert client.get('/api/game/stats/not-a-device').status_code == 400


def test_history_paging(client):
    client.post('/api/game/submit', json={'deviceId': D, 'score': 10})
    r = client.get(f'/api/game/history/{D}', params={'limit': 5, 'offset': 0})
    assert r.status_code == 200
    data = r.json()['data']
    assert data['total'] == 1 and data['hasMore'] is False and data['cached'] is False
    assert data['records'][0]['score'] == 10
    assert client.get(f'/api/game/history/{D}', params={'limit': 5}).json()['data']['cached'] is True
    assert client.get(f'/api/game/history/{D}', params={'offset': -1}).status_code == 400


def test_submit_rate_limit(strict_client):
    assert strict_client.post('/api/game/submit', json={'deviceId': D, 'score': 1}).status_code == 200
    r = strict_client.post('/api/game/submit', json={'deviceId': D, 'score': 2})
    assert r.status_code == 200
    assert r.headers['X-RateLimit-Remaining'] == '0'
    r = strict_client.post('/api/game/submit', json={'deviceId': D, 'score': 3})
    assert r.status_code == 429
    assert r.json()['error']['code'] == 'RATE_LIMIT_EXCEEDED'
    # another device has its own window
    assert strict_client.post('/api/game/submit', json={'deviceId': 'f' * 32, 'score': 3}).status_code == 200


def test_ranking_rate_limit_by_ip(strict_client, clock):
    for _ in range(3):
        assert strict_client.get('/api/game/ranking').status_code == 200
    assert strict_client.get('/api/game/ranking').status_code == 429
    clock.advance(61)
    assert strict_client.get('/api/game/ranking').status_code == 200


def test_storage_failure_maps_to_500(client, service, monkeypatch):
    from scoreboard.errors import StorageError

    def boom(*a, **k):
        raise StorageError("failed to record score")

    monkeypatch.setattr(service.ledger, 'submit', boom)
    r = client.post('/api/game/submit', json={'deviceId': D, 'score': 1})
    assert r.status_code == 500
    assert r.json()['error']['code'] == 'DATABASE_ERROR'
