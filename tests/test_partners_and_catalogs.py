from fastapi.testclient import TestClient

from marketplace.main import app

client = TestClient(app)


def _application(**overrides):
    body = {'name': 'Pho Corner', 'phone_number': '+84 555 0101', 'business_type': 'restaurant',
            'delivery_method': 'both', 'latitude': 10.77, 'longitude': 106.70}
    body.update(overrides)
    return body


def test_partner_application_review_grants_partner_role(signup, make_admin):
    user_id, headers, _ = signup(client, 'customer', 'owner')
    _, admin_h = make_admin(client)
    _, stranger_h, _ = signup(client)

    r = client.post('/partners/applications', json=_application(), headers=headers)
    assert r.status_code == 201, r.text
    app_id = r.json()['id']
    assert r.json()['status'] == 'pending'
    assert r.json()['user_id'] == user_id

    assert client.post('/partners/applications', json=_application(), headers=headers).status_code == 400
    assert client.get(f'/partners/applications/{app_id}', headers=headers).status_code == 200
    assert client.get(f'/partners/applications/{app_id}', headers=stranger_h).status_code == 403
    assert client.get('/partners/applications', headers=headers).status_code == 403

    # applicants may edit details but not decide on their own application
    r = client.patch(f'/partners/applications/{app_id}', json={'name': 'Pho Corner 2'}, headers=headers)
    assert r.status_code == 200 and r.json()['name'] == 'Pho Corner 2'
    r = client.patch(f'/partners/applications/{app_id}', json={'status': 'approved'}, headers=headers)
    assert r.status_code == 403

    pending = client.get('/partners/applications?status=pending', headers=admin_h).json()
    assert app_id in [p['id'] for p in pending]
    assert client.get('/partners/applications?status=bogus', headers=admin_h).status_code == 400

    assert 'partner' not in client.get('/users/me', headers=headers).json()['roles']
    r = client.patch(f'/partners/applications/{app_id}', json={'status': 'approved'}, headers=admin_h)
    assert r.status_code == 200 and r.json()['status'] == 'approved'
    assert 'partner' in client.get('/users/me', headers=headers).json()['roles']

    assert client.delete(f'/partners/applications/{app_id}', headers=headers).status_code == 403
    assert client.delete(f'/partners/applications/{app_id}', headers=admin_h).json() == {'success': True}
    assert client.get(f'/partners/applications/{app_id}', headers=admin_h).status_code == 404


def test_partner_application_validation(signup):
    _, headers, _ = signup(client)
    r = client.post('/partners/applications', json=_application(delivery_method='drone'), headers=headers)
    assert r.status_code == 422
    r = client.post('/partners/applications', json=_application(latitude=123.0), headers=headers)
    assert r.status_code == 422


def test_catalog_menu_is_nested(signup):
    partner_id, partner_h, _ = signup(client, 'partner', 'shop')
    _, customer_h, _ = signup(client)

    catalog = client.post('/catalogs', json={'name': 'Lunch'}, headers=partner_h)
    assert catalog.status_code == 201
    catalog_id = catalog.json()['id']
    category = client.post(f'/catalogs/{catalog_id}/categories', json={'name': 'Soups'}, headers=partner_h)
    assert category.status_code == 201
    category_id = category.json()['id']
    item = client.post(f'/categories/{category_id}/items',
                       json={'name': 'Pho', 'description': 'beef', 'price': 4.25}, headers=partner_h)
    assert item.status_code == 201
    assert client.post(f'/categories/{category_id}/items', json={'name': 'Bad', 'price': -1},
                       headers=partner_h).status_code == 422

    menu = client.get(f'/partners/{partner_id}/catalogs', headers=customer_h).json()
    assert menu == [{
        'id': catalog_id,
        'partner_id': partner_id,
        'name': 'Lunch',
        'categories': [{
            'id': category_id,
            'name': 'Soups',
            'items': [{'id': item.json()['id'], 'name': 'Pho', 'description': 'beef', 'price': 4.25}],
        }],
    }]


def test_only_owner_or_admin_edits_catalog(signup, make_admin):
    _, owner_h, _ = signup(client, 'partner', 'shop')
    _, rival_h, _ = signup(client, 'partner', 'rival')
    _, admin_h = make_admin(client)

    catalog_id = client.post('/catalogs', json={'name': 'Dinner'}, headers=owner_h).json()['id']
    category_id = client.post(f'/catalogs/{catalog_id}/categories', json={'name': 'Mains'},
                              headers=owner_h).json()['id']
    item_id = client.post(f'/categories/{category_id}/items', json={'name': 'Bun', 'price': 5},
                          headers=owner_h).json()['id']

    assert client.patch(f'/catalogs/{catalog_id}', json={'name': 'X'}, headers=rival_h).status_code == 403
    assert client.post(f'/catalogs/{catalog_id}/categories', json={'name': 'X'}, headers=rival_h).status_code == 403
    assert client.patch(f'/items/{item_id}', json={'price': 0}, headers=rival_h).status_code == 403
    assert client.delete(f'/categories/{category_id}', headers=rival_h).status_code == 403

    r = client.patch(f'/items/{item_id}', json={'price': 6.5}, headers=owner_h)
    assert r.status_code == 200 and r.json()['price'] == 6.5 and r.json()['name'] == 'Bun'
    r = client.patch(f'/categories/{category_id}', json={'name': 'Noodles'}, headers=admin_h)
    assert r.status_code == 200 and r.json()['name'] == 'Noodles'
    assert client.patch(f'/catalogs/{catalog_id}', json={'name': 'Evening'}, headers=owner_h).json()['name'] == 'Evening'

    assert client.patch('/items/999999', json={'price': 1}, headers=owner_h).status_code == 404
    assert client.post('/catalogs', json={'name': 'Nope'}, headers=rival_h).status_code == 201


def test_deleting_catalog_removes_categories_and_items(signup):
    partner_id, partner_h, _ = signup(client, 'partner', 'shop')
    catalog_id = client.post('/catalogs', json={'name': 'Drinks'}, headers=partner_h).json()['id']
    category_id = client.post(f'/catalogs/{catalog_id}/categories', json={'name': 'Tea'},
                              headers=partner_h).json()['id']
    item_id = client.post(f'/categories/{category_id}/items', json={'name': 'Tra da', 'price': 1},
                          headers=partner_h).json()['id']

    assert client.delete(f'/items/{item_id}', headers=partner_h).json() == {'success': True}
    assert client.delete(f'/items/{item_id}', headers=partner_h).status_code == 404
    client.post(f'/categories/{category_id}/items', json={'name': 'Cafe sua', 'price': 1.5}, headers=partner_h)

    assert client.delete(f'/catalogs/{catalog_id}', headers=partner_h).json() == {'success': True}
    assert client.get(f'/partners/{partner_id}/catalogs', headers=partner_h).json() == []
    assert client.patch(f'/categories/{category_id}', json={'name': 'X'}, headers=partner_h).status_code == 404


def test_customer_cannot_create_catalog(signup):
    _, headers, _ = signup(client)
    assert client.post('/catalogs', json={'name': 'Lunch'}, headers=headers).status_code == 403
