import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from marketplace.main import app
from marketplace.relay import INVALID_FORMAT, NOT_AUTHORIZED, UNAUTHORIZED, WATCH_DENIED

WS = '/ws/delivery-tracking'


def _connect(client, token):
    return client.websocket_connect(f'{WS}?token={token}')


def _subscribe(ws, order_id):
    ws.send_text(json.dumps({'action': 'subscribe', 'order_id': order_id}))


def _update(ws, order_id, courier_id, lat, lng):
    ws.send_text(json.dumps({
        'action': 'update_location',
        'order_id': order_id,
        'courier_id': str(courier_id),
        'latitude': lat,
        'longitude': lng,
    }))


def _sync(ws):
    """Round-trip an invalid frame so every earlier frame has been handled."""
    ws.send_text('ping')
    assert ws.receive_json() == INVALID_FORMAT


def test_location_update_reaches_watcher_not_sender(assigned_delivery):
    with TestClient(app) as client:
        ctx = assigned_delivery(client)
        order_id = ctx['order']['id']
        courier_id, _, courier_token = ctx['courier']
        customer_token = ctx['customer'][2]

        with _connect(client, customer_token) as watcher, _connect(client, courier_token) as courier:
            _subscribe(watcher, order_id)
            _subscribe(courier, order_id)
            _sync(watcher)
            _sync(courier)

            _update(courier, order_id, courier_id, 10.1, 20.2)
            frame = watcher.receive_json()
            assert frame['type'] == 'location'
            assert frame['order_id'] == order_id
            assert frame['courier_id'] == str(courier_id)
            assert frame['latitude'] == 10.1
            assert frame['longitude'] == 20.2
            datetime.fromisoformat(frame['timestamp'])

            # the next frame the courier sees is the reply to its own ping
            _sync(courier)


def test_subscriber_of_other_order_gets_nothing(assigned_delivery):
    with TestClient(app) as client:
        first, second = assigned_delivery(client), assigned_delivery(client)
        courier_id, _, courier_token = first['courier']

        with _connect(client, first['customer'][2]) as watcher, \
                _connect(client, second['customer'][2]) as other, \
                _connect(client, courier_token) as courier:
            _subscribe(watcher, first['order']['id'])
            _subscribe(other, second['order']['id'])
            _sync(watcher)
            _sync(other)
            _update(courier, first['order']['id'], courier_id, 1.0, 1.0)
            assert watcher.receive_json()['type'] == 'location'
            _sync(other)


def test_late_subscriber_receives_last_position(assigned_delivery):
    with TestClient(app) as client:
        ctx = assigned_delivery(client)
        order_id = ctx['order']['id']
        courier_id, _, courier_token = ctx['courier']
        with _connect(client, courier_token) as courier:
            _update(courier, order_id, courier_id, 1.0, 2.0)
            _update(courier, order_id, courier_id, 3.5, 4.5)
            _sync(courier)
        with _connect(client, ctx['customer'][2]) as late:
            _subscribe(late, order_id)
            frame = late.receive_json()
            assert frame['type'] == 'location'
            assert frame['order_id'] == order_id
            assert frame['courier_id'] == str(courier_id)
            assert (frame['latitude'], frame['longitude']) == (3.5, 4.5)


def test_invalid_frames_keep_connection_usable(signup, place_order):
    with TestClient(app) as client:
        _, headers, token = signup(client)
        order = place_order(client, headers)
        with _connect(client, token) as ws:
            ws.send_text('{not json')
            assert ws.receive_json() == INVALID_FORMAT
            ws.send_text(json.dumps({'action': 'teleport', 'order_id': 1}))
            assert ws.receive_json() == INVALID_FORMAT
            ws.send_text(json.dumps({'action': 'update_location', 'order_id': 1}))
            assert ws.receive_json() == INVALID_FORMAT
            _subscribe(ws, order['id'])
            _sync(ws)


def test_closing_connection_cleans_registry(signup, place_order):
    registry = app.state.location_relay.registry
    with TestClient(app) as client:
        _, headers, token = signup(client)
        order_id = place_order(client, headers)['id']
        with _connect(client, token) as ws:
            _subscribe(ws, order_id)
            _sync(ws)
            assert order_id in registry
        assert order_id not in registry


def test_resubscribe_moves_connection(signup, place_order):
    registry = app.state.location_relay.registry
    with TestClient(app) as client:
        _, headers, token = signup(client)
        first = place_order(client, headers)['id']
        second = place_order(client, headers)['id']
        with _connect(client, token) as ws:
            _subscribe(ws, first)
            _subscribe(ws, second)
            _sync(ws)
            assert first not in registry
            assert second in registry
        assert second not in registry


@pytest.mark.parametrize('query', ['', '?token=', '?token=not-a-jwt'])
def test_connection_without_valid_token_is_refused(query):
    with TestClient(app) as client:
        with client.websocket_connect(f'{WS}{query}') as ws:
            assert ws.receive_json() == UNAUTHORIZED
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 1008


def test_outsider_cannot_watch_an_order(assigned_delivery, signup):
    registry = app.state.location_relay.registry
    with TestClient(app) as client:
        ctx = assigned_delivery(client)
        order_id = ctx['order']['id']
        _, _, outsider_token = signup(client, 'customer', 'nosy')
        with _connect(client, outsider_token) as ws:
            _subscribe(ws, order_id)
            assert ws.receive_json() == WATCH_DENIED
            assert order_id not in registry


def test_only_assigned_courier_publishes_for_delivery(assigned_delivery, signup):
    with TestClient(app) as client:
        ctx = assigned_delivery(client)
        order_id = ctx['order']['id']
        courier_id, _, courier_token = ctx['courier']
        _, customer_h, customer_token = ctx['customer']
        other_id, _, other_token = signup(client, 'courier', 'rival')

        with _connect(client, customer_token) as watcher, \
                _connect(client, other_token) as rival, \
                _connect(client, courier_token) as courier:
            _subscribe(watcher, order_id)
            _sync(watcher)

            # a courier not assigned to the order, using its own id
            _update(rival, order_id, other_id, 5.0, 5.0)
            assert rival.receive_json() == NOT_AUTHORIZED
            # the same courier claiming to be the assigned one
            _update(rival, order_id, courier_id, 5.0, 5.0)
            assert rival.receive_json() == NOT_AUTHORIZED

            _update(courier, order_id, courier_id, 6.0, 7.0)
            frame = watcher.receive_json()
            assert frame['courier_id'] == str(courier_id)

        r = client.get(f'/orders/{order_id}/location', headers=customer_h)
        assert r.status_code == 200
        body = r.json()
        assert (body['latitude'], body['longitude']) == (6.0, 7.0)
        assert body['courier_id'] == str(courier_id)


def test_unassigned_order_accepts_couriers_only(signup, place_order):
    with TestClient(app) as client:
        customer_id, customer_h, customer_token = signup(client)
        courier_id, _, courier_token = signup(client, 'courier', 'rider')
        order_id = place_order(client, customer_h)['id']

        with _connect(client, customer_token) as customer:
            _update(customer, order_id, customer_id, 1.0, 1.0)
            assert customer.receive_json() == NOT_AUTHORIZED
        with _connect(client, courier_token) as courier:
            _update(courier, order_id, courier_id, 2.0, 3.0)
            _sync(courier)

        r = client.get(f'/orders/{order_id}/location', headers=customer_h)
        assert r.status_code == 200
        assert r.json()['courier_id'] == str(courier_id)


def test_order_location_404_without_history(signup, place_order):
    with TestClient(app) as client:
        _, headers, _ = signup(client)
        order = place_order(client, headers)
        r = client.get(f"/orders/{order['id']}/location", headers=headers)
        assert r.status_code == 404
