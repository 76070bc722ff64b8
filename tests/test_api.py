from datetime import datetime, timedelta, timezone

import pytest

from conftest import ics_calendar, ics_event

pytestmark = pytest.mark.asyncio


async def _project(client, title='Inbox'):
    r = await client.post('/api/projects', json={'title': title})
    assert r.status_code == 201
    return r.json()


async def test_project_crud_and_reorder(client):
    a = await _project(client, 'a')
    b = await _project(client, 'b')
    assert (a['position'], b['position']) == (1, 2)

    r = await client.put('/api/projects/reorder', json={'ids': [b['id'], a['id']]})
    assert r.status_code == 200
    assert [p['title'] for p in r.json()] == ['b', 'a']

    r = await client.put(f"/api/projects/{a['id']}", json={'title': 'renamed'})
    assert r.status_code == 200 and r.json()['title'] == 'renamed'

    r = await client.put('/api/projects/reorder', json={'ids': [a['id']]})
    assert r.status_code == 400

    r = await client.delete(f"/api/projects/{b['id']}")
    assert r.status_code == 204
    r = await client.get(f"/api/projects/{b['id']}")
    assert r.status_code == 404
    r = await client.get('/api/projects')
    assert [(p['title'], p['position']) for p in r.json()] == [('renamed', 1)]


async def test_todo_lifecycle_over_http(client):
    project = await _project(client)
    r = await client.post('/api/todos', json={
        'title': 'pay rent', 'project_id': project['id'],
        'due_date': '2024-01-31T09:00:00Z', 'recurrence_interval': 1, 'recurrence_unit': 'months',
    })
    assert r.status_code == 201
    todo = r.json()
    assert todo['recurrence_unit'] == 'month'
    assert datetime.fromisoformat(todo['due_date'].replace('Z', '+00:00')) == datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)

    r = await client.patch(f"/api/todos/{todo['id']}", json={'completed': True})
    assert r.status_code == 200
    assert r.json()['completed'] is True
    assert r.json()['completed_at'] is not None

    r = await client.get('/api/todos', params={'project_id': project['id']})
    items = r.json()
    assert len(items) == 2
    nxt = next(t for t in items if not t['completed'])
    assert nxt['due_date'].startswith('2024-02-29T09:00:00')

    r = await client.patch(f"/api/todos/{nxt['id']}", json={'due_date': None})
    assert r.status_code == 200 and r.json()['due_date'] is None

    r = await client.delete(f"/api/todos/{nxt['id']}")
    assert r.status_code == 204
    r = await client.get(f"/api/todos/{nxt['id']}")
    assert r.status_code == 404


async def test_todo_reorder_over_http(client):
    project = await _project(client)
    ids = []
    for title in ('a', 'b', 'c'):
        r = await client.post('/api/todos', json={'title': title, 'project_id': project['id']})
        ids.append(r.json()['id'])
    r = await client.put('/api/todos/reorder', json={'ids': ids})
    assert r.status_code == 200
    assert [t['title'] for t in r.json()] == ['a', 'b', 'c']

    r = await client.put('/api/todos/reorder', json={'ids': ids[:2]})
    assert r.status_code == 400
    r = await client.put('/api/todos/reorder', json={'ids': []})
    assert r.status_code == 400


@pytest.mark.parametrize('payload,status', [
    ({'title': 'x', 'due_date': 'tomorrow-ish'}, 400),
    ({'title': 'x', 'recurrence_interval': 2, 'recurrence_unit': 'hour'}, 400),
    ({'title': 'x', 'recurrence_interval': 2}, 400),
    ({'title': ''}, 400),
    ({'title': 'x', 'project_id': 999}, 404),
    ({'title': 'x', 'project_id': 'abc'}, 422),
])
async def test_todo_validation_status_codes(client, payload, status):
    project = await _project(client)
    body = {'project_id': project['id'], **payload}
    r = await client.post('/api/todos', json=body)
    assert r.status_code == status


async def test_unknown_todo_is_404(client):
    r = await client.patch('/api/todos/4242', json={'title': 'nope'})
    assert r.status_code == 404
    r = await client.delete('/api/todos/4242')
    assert r.status_code == 404


async def test_clearing_project_is_rejected(client):
    project = await _project(client)
    r = await client.post('/api/todos', json={'title': 'x', 'project_id': project['id']})
    r = await client.patch(f"/api/todos/{r.json()['id']}", json={'project_id': None})
    assert r.status_code == 400


async def test_feed_subscription_over_http(app, client):
    url = 'https://calendar.example.com/club.ics'
    soon = (datetime.now(timezone.utc) + timedelta(days=10)).strftime('%Y%m%dT100000Z')
    app.state.feed_routes[url] = (200, ics_calendar(ics_event('match@test', 'Match day', f'DTSTART:{soon}')))

    r = await client.post('/api/feeds', json={'url': url, 'project_name': 'Club'})
    assert r.status_code == 201
    sub = r.json()
    assert sub['project_name'] == 'Club'

    # the initial sync runs in the background
    await app.state.refresher.drain()
    r = await client.get('/api/todos', params={'project_id': sub['project_id']})
    assert [t['title'] for t in r.json()] == ['Match day']
    assert r.json()[0]['external_uid'] == 'match@test'

    r = await client.post('/api/feeds', json={'url': url, 'project_name': 'Club'})
    assert r.status_code == 409

    r = await client.post('/api/feeds/refresh')
    assert r.status_code == 200
    assert r.json()['results'] == {str(sub['id']): 0}

    r = await client.get('/api/feeds')
    [listed] = r.json()
    assert listed['project_name'] == 'Club'
    assert listed['last_synced_at'] is not None

    r = await client.delete(f"/api/feeds/{sub['id']}")
    assert r.status_code == 204
    r = await client.get(f"/api/projects/{sub['project_id']}")
    assert r.status_code == 404
    r = await client.delete(f"/api/feeds/{sub['id']}")
    assert r.status_code == 404


async def test_refresh_reports_failures(app, client):
    url = 'https://down.example.com/cal.ics'
    r = await client.post('/api/feeds', json={'url': url, 'project_name': 'Down'})
    sub = r.json()
    await app.state.refresher.drain()
    r = await client.post('/api/feeds/refresh')
    assert 'status 404' in r.json()['results'][str(sub['id'])]
