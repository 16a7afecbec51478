from fastapi.testclient import TestClient

from marketplace.main import app

client = TestClient(app)


def test_payment_lifecycle(signup, place_order):
    _, customer_h, _ = signup(client)
    partner_id, partner_h, _ = signup(client, 'partner', 'shop')
    _, stranger_h, _ = signup(client)
    order_id = place_order(client, customer_h, partner_id=partner_id)['id']

    body = {'payment_method': 'paypal', 'transaction_id': 'tx-1', 'transaction_data': {'payer': 'p@example.com'}}
    assert client.post(f'/orders/{order_id}/payment', json=body, headers=partner_h).status_code == 403
    assert client.get(f'/orders/{order_id}/payment', headers=customer_h).status_code == 404

    r = client.post(f'/orders/{order_id}/payment', json=body, headers=customer_h)
    assert r.status_code == 201, r.text
    payment = r.json()
    assert payment['payment_status'] == 'pending'
    assert payment['transaction_data'] == {'payer': 'p@example.com'}
    assert client.post(f'/orders/{order_id}/payment', json=body, headers=customer_h).status_code == 400

    assert client.get(f'/orders/{order_id}/payment', headers=partner_h).json()['id'] == payment['id']
    assert client.get(f'/orders/{order_id}/payment', headers=stranger_h).status_code == 403

    status = {'payment_status': 'completed'}
    assert client.patch(f'/orders/{order_id}/payment', json=status, headers=customer_h).status_code == 403
    r = client.patch(f'/orders/{order_id}/payment', json=status, headers=partner_h)
    assert r.status_code == 200 and r.json()['payment_status'] == 'completed'
    r = client.patch(f'/orders/{order_id}/payment', json={'payment_status': 'failed'}, headers=partner_h)
    assert r.status_code == 400


def test_payment_validation(signup, place_order):
    _, customer_h, _ = signup(client)
    order_id = place_order(client, customer_h)['id']
    r = client.post(f'/orders/{order_id}/payment', json={'payment_method': 'cash'}, headers=customer_h)
    assert r.status_code == 422
    r = client.post('/orders/999999/payment', json={'payment_method': 'paypal'}, headers=customer_h)
    assert r.status_code == 404


def test_courier_schedule_crud(signup):
    _, courier_h, _ = signup(client, 'courier', 'rider')
    _, other_h, _ = signup(client, 'courier', 'rival')
    _, customer_h, _ = signup(client)

    shift = {'start_datetime': '2026-05-01T10:00:00+02:00', 'end_datetime': '2026-05-01T14:00:00+02:00',
             'notes': 'downtown'}
    assert client.post('/courier/schedules', json=shift, headers=customer_h).status_code == 403
    r = client.post('/courier/schedules', json=shift, headers=courier_h)
    assert r.status_code == 201, r.text
    created = r.json()
    assert created['start_datetime'] == '2026-05-01T08:00:00+00:00'
    assert created['status'] == 'scheduled'

    backwards = dict(shift, end_datetime='2026-05-01T09:00:00+02:00')
    assert client.post('/courier/schedules', json=backwards, headers=courier_h).status_code == 400

    later = {'start_datetime': '2026-05-03T08:00:00Z', 'end_datetime': '2026-05-03T12:00:00Z'}
    client.post('/courier/schedules', json=later, headers=courier_h)
    listed = client.get('/courier/schedules', params={'to_date': '2026-05-02T00:00:00Z'}, headers=courier_h).json()
    assert [s['id'] for s in listed] == [created['id']]
    assert len(client.get('/courier/schedules', headers=courier_h).json()) == 2
    assert client.get('/courier/schedules', headers=other_h).json() == []

    url = f"/courier/schedules/{created['id']}"
    assert client.patch(url, json={'status': 'confirmed'}, headers=other_h).status_code == 403
    r = client.patch(url, json={'status': 'confirmed', 'end_datetime': '2026-05-01T09:00:00Z'}, headers=courier_h)
    assert r.status_code == 200
    assert r.json()['status'] == 'confirmed'
    assert r.json()['end_datetime'] == '2026-05-01T09:00:00+00:00'
    assert client.patch(url, json={'end_datetime': '2026-05-01T07:00:00Z'}, headers=courier_h).status_code == 400

    assert client.delete(url, headers=other_h).status_code == 403
    assert client.delete(url, headers=courier_h).json() == {'success': True}
    assert client.delete(url, headers=courier_h).status_code == 404


def test_auto_assign_uses_available_courier(signup, place_order):
    _, customer_h, _ = signup(client)
    partner_id, partner_h, _ = signup(client, 'partner', 'shop')
    _, other_partner_h, _ = signup(client, 'partner', 'rival')
    courier_id, courier_h, _ = signup(client, 'courier', 'rider')
    order_id = place_order(client, customer_h, partner_id=partner_id)['id']

    r = client.put('/courier/availability', json={'is_available': True}, headers=courier_h)
    assert r.json() == {'courier_id': courier_id, 'is_available': True, 'is_working': True}
    assert client.put('/courier/availability', json={'is_available': True}, headers=customer_h).status_code == 403

    assert client.post('/deliveries/auto', json={'order_id': order_id}, headers=other_partner_h).status_code == 403
    r = client.post('/deliveries/auto', json={'order_id': order_id}, headers=partner_h)
    assert r.status_code == 201, r.text
    delivery = r.json()
    assert delivery['order_id'] == order_id
    assert delivery['status'] == 'assigned'
    assert delivery['courier_id'] == courier_id
    assert client.post('/deliveries/auto', json={'order_id': order_id}, headers=partner_h).status_code == 400
