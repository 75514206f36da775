"""
API tests for the reconciled listing, column filters, autocomplete and master data.
Uses the function-scoped `client` fixture (fresh seeded SQLite DB per test).
"""
import pytest
from starlette.testclient import TestClient

from conftest import YEAR, UNIT_A, UNIT_B


def _transfer_b3_to_a3(client):
    res = client.post('/api/swap-transactions', json={
        'year': YEAR,
        'swapDate': '2025-10-01T00:00:00',
        'swapType': 'transfer',
        'groupName': 'คำสั่งที่ 15/2568',
        'swapDetails': [{
            'personnelId': 'slot-b3', 'nationalId': '1100000000004', 'fullName': 'วิชัย กล้าหาญ',
            'rank': 'พ.ต.ต.', 'posCodeId': 9,
            'fromUnit': UNIT_B, 'fromPositionNumber': '2003', 'fromPosition': 'สว.',
            'toUnit': UNIT_A, 'toPositionNumber': '1003', 'toPosition': 'สว.', 'toPosCodeId': 9,
        }],
    })
    assert res.status_code == 200
    return res.json()['data']


# ── Health / root ─────────────────────────────────────────────────────────────

class TestHealth:
    def test_health_is_public(self, db, app):
        with TestClient(app) as c:
            res = c.get('/api/health')
        assert res.status_code == 200
        body = res.json()
        assert body['status'] == 'ok'
        assert body['db']['status'] == 'connected'

    def test_version_and_root(self, client):
        assert client.get('/api/version').json()['service'] == 'Police Personnel Board API'
        assert 'version' in client.get('/api').json()

    def test_security_headers_and_request_id(self, client):
        res = client.get('/api/version')
        assert res.headers['X-Content-Type-Options'] == 'nosniff'
        assert res.headers['X-Frame-Options'] == 'DENY'
        assert len(res.headers['X-Request-ID']) == 8


# ── Master data ───────────────────────────────────────────────────────────────

class TestMasterData:
    def test_pos_codes_ordered_by_id(self, client):
        res = client.get('/api/pos-codes')
        assert res.status_code == 200
        codes = res.json()['data']
        assert len(codes) == 12
        assert [c['id'] for c in codes] == sorted(c['id'] for c in codes)
        assert codes[6] == {'id': 7, 'name': 'ผกก.'}

    def test_units_of_year(self, client):
        res = client.get('/api/units', params={'year': YEAR})
        assert res.status_code == 200
        assert sorted(res.json()['data']) == sorted([UNIT_A, UNIT_B])

    def test_units_of_empty_year(self, client):
        assert client.get('/api/units', params={'year': 2500}).json()['data'] == []

    def test_requires_auth(self, raw_client):
        assert raw_client.get('/api/pos-codes').status_code == 401


# ── Reconciled listing ────────────────────────────────────────────────────────

class TestReconciledListing:
    def test_default_page(self, client):
        res = client.get('/api/reconciled-positions', params={'year': YEAR})
        assert res.status_code == 200
        data = res.json()['data']
        assert data['totalCount'] == 7
        assert data['page'] == 0
        assert data['pageSize'] == 10
        assert [r['noId'] for r in data['swapDetails']] == ['1', '2', '3', '10', '11', '12', None]
        assert data['summary']['totalVacant'] == 2
        assert data['summary']['vacantFilled'] == 0
        assert sorted(data['filters']['units']) == sorted([UNIT_A, UNIT_B])
        assert len(data['filters']['positionCodes']) == 12

    def test_row_shape(self, client):
        data = client.get('/api/reconciled-positions', params={'year': YEAR}).json()['data']
        row = data['swapDetails'][0]
        assert row['id'] == 'slot-a1'
        assert row['fromUnit'] == UNIT_A
        assert row['fromPositionNumber'] == '1001'
        assert row['posCodeMaster'] == {'id': 7, 'name': 'ผกก.'}
        assert row['hasSwapped'] is False
        assert row['replacedPerson'] is None
        assert row['occupancy'] == 'occupied'

    def test_unmoved_vacancy_replaces_itself(self, client):
        data = client.get('/api/reconciled-positions', params={'year': YEAR}).json()['data']
        vacant = data['swapDetails'][2]
        assert vacant['occupancy'] == 'vacant'
        assert vacant['replacedPerson']['id'] == 'slot-a3'

    def test_pages_concatenate(self, client):
        full = client.get('/api/reconciled-positions', params={'year': YEAR, 'pageSize': 100}).json()['data']
        ids = []
        for page in range(3):
            data = client.get('/api/reconciled-positions',
                              params={'year': YEAR, 'page': page, 'pageSize': 3}).json()['data']
            assert data['totalCount'] == 7
            ids += [r['id'] for r in data['swapDetails']]
        assert ids == [r['id'] for r in full['swapDetails']]

    def test_page_past_end_is_empty(self, client):
        data = client.get('/api/reconciled-positions',
                          params={'year': YEAR, 'page': 9, 'pageSize': 10}).json()['data']
        assert data['swapDetails'] == []
        assert data['totalCount'] == 7

    @pytest.mark.parametrize('status,expected', [('vacant', 1), ('reserved', 1), ('occupied', 5), ('all', 7)])
    def test_status_filter(self, client, status, expected):
        data = client.get('/api/reconciled-positions', params={'year': YEAR, 'status': status}).json()['data']
        assert data['totalCount'] == expected

    def test_unit_and_pos_code_filters(self, client):
        data = client.get('/api/reconciled-positions', params={'year': YEAR, 'unit': UNIT_A}).json()['data']
        assert data['totalCount'] == 4
        data = client.get('/api/reconciled-positions', params={'year': YEAR, 'posCodeId': '7'}).json()['data']
        assert sorted(r['id'] for r in data['swapDetails']) == ['slot-a1', 'slot-b1']

    def test_search(self, client):
        data = client.get('/api/reconciled-positions', params={'year': YEAR, 'search': 'สมชาย'}).json()['data']
        assert [r['id'] for r in data['swapDetails']] == ['slot-a1']

    def test_other_year_is_empty(self, client):
        data = client.get('/api/reconciled-positions', params={'year': 2567}).json()['data']
        assert data['totalCount'] == 0
        assert data['summary']['totalPersonnel'] == 0

    def test_transfer_fills_vacancy(self, client):
        _transfer_b3_to_a3(client)
        data = client.get('/api/reconciled-positions', params={'year': YEAR}).json()['data']
        assert data['totalCount'] == 6
        assert data['summary']['vacantFilled'] == 1
        assert data['summary']['transfer'] == 1
        assert all(r['id'] != 'slot-a3' for r in data['swapDetails'])
        mover = next(r for r in data['swapDetails'] if r['id'] == 'slot-b3')
        assert mover['hasSwapped'] is True
        assert mover['transaction']['groupName'] == 'คำสั่งที่ 15/2568'
        # A real person moving into a vacancy replaces nobody
        assert mover['replacedPerson'] is None

    def test_scoped_listing_shows_incoming(self, client):
        _transfer_b3_to_a3(client)
        data = client.get('/api/reconciled-positions', params={'year': YEAR, 'unit': UNIT_A}).json()['data']
        assert data['totalCount'] == 4
        incoming = [r for r in data['swapDetails'] if r['personnelId'] == 'slot-b3']
        assert len(incoming) == 1
        assert incoming[0]['noId'] == '3'

    def test_swap_type_none(self, client):
        _transfer_b3_to_a3(client)
        data = client.get('/api/reconciled-positions', params={'year': YEAR, 'swapType': 'none'}).json()['data']
        assert data['totalCount'] == 5

    def test_filters_only(self, client):
        res = client.get('/api/reconciled-positions', params={'year': YEAR, 'filtersOnly': 'true'})
        assert res.status_code == 200
        data = res.json()['data']
        assert set(data) == {'filters'}
        assert len(data['filters']['positionCodes']) == 12


class TestListingValidation:
    @pytest.mark.parametrize('params', [
        {'posCodeId': 'abc'},
        {'status': 'bogus'},
        {'swapType': 'four-way'},
        {'pageSize': 0},
        {'pageSize': 5000},
        {'page': -1},
        {'year': 'abc'},
    ])
    def test_bad_parameters_are_400(self, client, params):
        res = client.get('/api/reconciled-positions', params={'year': YEAR, **params})
        assert res.status_code == 400
        body = res.json()
        assert body['success'] is False
        assert body['message']


# ── Column filters ────────────────────────────────────────────────────────────

class TestColumnFilters:
    def test_filters_and_cache(self, client):
        res = client.get('/api/reconciled-positions/filters', params={'year': YEAR})
        assert res.status_code == 200
        body = res.json()
        assert 'cached' not in body
        data = body['data']
        assert set(data) == {'incomingPerson', 'currentHolder', 'currentPosition',
                             'newPosition', 'supporter', 'reason'}
        supporter = {o['value']: o['count'] for o in data['supporter']}
        assert supporter == {'ผบก.สมุทรปราการ': 1, '(ไม่ระบุ)': 6}
        holders = {o['value']: o['count'] for o in data['currentHolder']}
        assert holders['ตำแหน่งว่าง'] == 1
        assert holders['ว่าง (กันตำแหน่ง)'] == 1
        assert holders['พ.ต.อ. สมชาย ใจดี'] == 1

        again = client.get('/api/reconciled-positions/filters', params={'year': YEAR}).json()
        assert again['cached'] is True
        assert again['data'] == data

    def test_write_clears_cache(self, client, fresh_cache):
        client.get('/api/reconciled-positions/filters', params={'year': YEAR})
        assert len(fresh_cache) == 1
        _transfer_b3_to_a3(client)
        assert len(fresh_cache) == 0
        body = client.get('/api/reconciled-positions/filters', params={'year': YEAR}).json()
        assert 'cached' not in body
        assert sum(o['count'] for o in body['data']['supporter']) == 6

    def test_cache_key_includes_filters(self, client):
        client.get('/api/reconciled-positions/filters', params={'year': YEAR})
        body = client.get('/api/reconciled-positions/filters', params={'year': YEAR, 'unit': UNIT_A}).json()
        assert 'cached' not in body

    def test_bad_status_is_400(self, client):
        res = client.get('/api/reconciled-positions/filters', params={'year': YEAR, 'status': 'x'})
        assert res.status_code == 400


# ── Autocomplete ──────────────────────────────────────────────────────────────

class TestAutocomplete:
    def test_short_query_returns_nothing(self, client):
        res = client.get('/api/reconciled-positions/autocomplete', params={'q': 'ส', 'year': YEAR})
        assert res.status_code == 200
        assert res.json()['data']['suggestions'] == []

    def test_name_query(self, client):
        data = client.get('/api/reconciled-positions/autocomplete',
                          params={'q': 'สมชาย', 'year': YEAR}).json()['data']
        assert data['total'] == 1
        s = data['suggestions'][0]
        assert s['id'] == 'slot-a1'
        assert s['label'] == 'พ.ต.อ. สมชาย ใจดี'
        assert s['type'] == 'personnel'
        assert s['posCode'] == '7 - ผกก.'

    def test_digit_query_leads_with_position_number(self, client):
        data = client.get('/api/reconciled-positions/autocomplete',
                          params={'q': '1001', 'year': YEAR}).json()['data']
        assert data['suggestions'][0]['type'] == 'position_number'
        assert data['suggestions'][0]['id'] == 'pos-1001'
        assert any(s['id'] == 'slot-a1' for s in data['suggestions'])

    def test_limit(self, client):
        data = client.get('/api/reconciled-positions/autocomplete',
                          params={'q': 'สภ.', 'year': YEAR, 'limit': 3}).json()['data']
        assert data['total'] == 3

    def test_like_wildcards_are_literal(self, client):
        for q in ('%%', '__'):
            data = client.get('/api/reconciled-positions/autocomplete',
                              params={'q': q, 'year': YEAR}).json()['data']
            assert data['suggestions'] == []
