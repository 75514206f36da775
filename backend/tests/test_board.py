"""
Tests for personnel-board layout persistence (load, save, delete).
"""
import json
import pytest

from conftest import YEAR, UNIT_A, UNIT_B


def _person(item_id, slot_id, name, unit, number, position, pos_code, **extra):
    p = {
        'id': item_id, 'originalId': slot_id, 'fullName': name, 'rank': 'พ.ต.อ.',
        'unit': unit, 'positionNumber': number, 'position': position, 'posCodeId': pos_code,
    }
    p.update(extra)
    return p


@pytest.fixture
def swap_lane():
    personnel = {
        'p1': _person('p1', 'slot-a1', 'สมชาย ใจดี', UNIT_A, '1001', 'ผกก.', 7),
        'p2': _person('p2', 'slot-b1', 'ประยุทธ มั่นคง', UNIT_B, '2001', 'ผกก.', 7),
    }
    column = {'id': 'lane-1', 'title': 'สลับ ผกก.', 'chainType': 'swap', 'itemIds': ['p1', 'p2']}
    return column, personnel


def _save(client, columns, personnel_map):
    res = client.post('/api/personnel-board', json={
        'year': YEAR, 'columns': columns, 'personnelMap': personnel_map,
    })
    assert res.status_code == 200, res.text
    return res.json()


def _load(client):
    res = client.get('/api/personnel-board', params={'year': YEAR})
    assert res.status_code == 200
    return res.json()


class TestLoadBoard:
    def test_empty_board(self, client):
        body = _load(client)
        assert body == {'success': True, 'year': YEAR, 'columns': [], 'personnelMap': {}}

    def test_year_is_required(self, client):
        assert client.get('/api/personnel-board').status_code == 400

    def test_requires_auth(self, raw_client):
        res = raw_client.get('/api/personnel-board', params={'year': YEAR})
        assert res.status_code == 401
        assert res.json()['error'] == 'Unauthorized'

    def test_unreadable_layout_serves_empty_board(self, client, db):
        from boardlib.models import SwapTransaction
        with db.session() as s:
            s.add(SwapTransaction(year=YEAR, swap_type='board-layout', status='active', notes='{not json'))
        assert _load(client)['columns'] == []

    def test_missing_transaction_keeps_lane(self, client, db):
        from boardlib.models import SwapTransaction
        lanes = [{'index': 0, 'transactionId': 'gone', 'title': 'หายไป'}]
        with db.session() as s:
            s.add(SwapTransaction(year=YEAR, swap_type='board-layout', status='active',
                                  notes=json.dumps({'lanes': lanes})))
        columns = _load(client)['columns']
        assert len(columns) == 1
        assert columns[0]['title'] == 'หายไป'
        assert columns[0]['itemIds'] == []
        assert columns[0]['chainType'] == 'custom'


class TestSaveBoard:
    def test_new_lane_creates_transaction(self, client, swap_lane):
        column, personnel = swap_lane
        result = _save(client, [column], personnel)
        assert result['success'] is True
        assert result['createdTransactionsCount'] == 1
        assert result['updatedTransactionsCount'] == 0
        assert result['lanesCount'] == 1
        assert str(YEAR) in result['message']

        board = _load(client)
        lane = board['columns'][0]
        assert lane['title'] == 'สลับ ผกก.'
        assert lane['chainType'] == 'swap'
        assert lane['linkedTransactionType'] == 'two-way'
        assert len(lane['itemIds']) == 2
        first = board['personnelMap'][lane['itemIds'][0]]
        second = board['personnelMap'][lane['itemIds'][1]]
        assert first['originalId'] == 'slot-a1'
        assert first['toUnit'] == UNIT_B
        assert first['toPositionNumber'] == '2001'
        assert second['toUnit'] == UNIT_A
        assert second['toPositionNumber'] == '1001'
        assert first['transactionType'] == 'two-way'

    def test_saved_lane_is_active_not_completed(self, client, swap_lane):
        column, personnel = swap_lane
        _save(client, [column], personnel)
        txs = client.get('/api/swap-transactions', params={'year': YEAR}).json()['data']
        assert len(txs) == 1
        assert txs[0]['status'] == 'active'
        data = client.get('/api/reconciled-positions', params={'year': YEAR}).json()['data']
        assert data['summary']['twoWaySwap'] == 0

    def test_round_trip_updates_linked_transaction(self, client, swap_lane):
        column, personnel = swap_lane
        _save(client, [column], personnel)
        board = _load(client)
        lane = dict(board['columns'][0], title='สลับ ผกก. (แก้ไข)')
        tx_id = lane['linkedTransactionId']

        result = _save(client, [lane], board['personnelMap'])
        assert result['updatedTransactionsCount'] == 1
        assert result['createdTransactionsCount'] == 0

        again = _load(client)
        assert again['columns'][0]['linkedTransactionId'] == tx_id
        assert again['columns'][0]['title'] == 'สลับ ผกก. (แก้ไข)'
        assert again['columns'][0]['itemIds'] == lane['itemIds']

    def test_promotion_lane_destinations(self, client):
        vacancy = {'unit': UNIT_A, 'positionNumber': '1003', 'position': 'สว.', 'posCodeMaster': {'id': 9}}
        personnel = {
            'p1': _person('p1', 'slot-a4', 'มานะ อดทน', UNIT_A, '1004', 'รอง สว.', 10),
            'p2': _person('p2', 'slot-b3', 'วิชัย กล้าหาญ', UNIT_B, '2003', 'สว.', 9),
        }
        column = {'id': 'lane-p', 'title': 'เลื่อน สว.', 'chainType': 'promotion',
                  'itemIds': ['p1', 'p2'], 'vacantPosition': vacancy}
        _save(client, [column], personnel)
        board = _load(client)
        lane = board['columns'][0]
        head = board['personnelMap'][lane['itemIds'][0]]
        follower = board['personnelMap'][lane['itemIds'][1]]
        assert lane['linkedTransactionType'] == 'promotion-chain'
        assert head['toPositionNumber'] == '1003'
        assert head['toPosCodeId'] == 9
        assert follower['toPositionNumber'] == '1004'

    def test_removed_lane_deletes_transaction(self, client, swap_lane):
        column, personnel = swap_lane
        _save(client, [column], personnel)
        result = _save(client, [], {})
        assert result['lanesCount'] == 0
        assert _load(client)['columns'] == []
        assert client.get('/api/swap-transactions').json()['data'] == []

    def test_custom_lane_keeps_inline_personnel(self, client):
        personnel = {'c1': _person('c1', 'placeholder-1', 'ตำแหน่งว่าง', UNIT_A, '1003', 'สว.', 9)}
        column = {'id': 'custom-1', 'title': 'รอพิจารณา', 'chainType': 'custom', 'itemIds': ['c1']}
        result = _save(client, [column], personnel)
        lane = result['lanes'][0]
        assert lane['isCustomLane'] is True
        assert lane['itemIds'] == ['c1']
        assert lane['personnel'][0]['id'] == 'c1'

    def test_transaction_created_via_api_leads_the_board(self, client, swap_lane):
        column, personnel = swap_lane
        _save(client, [column], personnel)
        res = client.post('/api/swap-transactions', json={
            'year': YEAR, 'swapDate': '2025-10-01T00:00:00', 'swapType': 'transfer',
            'groupName': 'ย้าย สว.',
            'swapDetails': [{'personnelId': 'slot-b3', 'fullName': 'วิชัย กล้าหาญ',
                             'toUnit': UNIT_A, 'toPositionNumber': '1003'}],
        })
        new_id = res.json()['data']['id']
        columns = _load(client)['columns']
        assert len(columns) == 2
        assert columns[0]['linkedTransactionId'] == new_id
        assert columns[0]['chainType'] == 'custom'
        assert columns[1]['title'] == 'สลับ ผกก.'

    def test_save_is_atomic(self, client, swap_lane, monkeypatch):
        column, personnel = swap_lane
        _save(client, [column], personnel)
        before = _load(client)

        import boardlib.board as board_module

        def _boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(board_module, '_write_sentinel', _boom)
        extra = {'id': 'lane-2', 'title': 'ใหม่', 'chainType': 'swap', 'itemIds': []}
        res = client.post('/api/personnel-board', json={
            'year': YEAR, 'columns': [extra], 'personnelMap': {},
        })
        assert res.status_code == 500
        assert res.json()['message'] == 'disk full'
        monkeypatch.undo()

        after = _load(client)
        assert after == before
        assert len(client.get('/api/swap-transactions').json()['data']) == 1

    def test_invalid_body_is_400(self, client):
        res = client.post('/api/personnel-board', json={'columns': []})
        assert res.status_code == 400


class TestDeleteBoard:
    def test_delete_layout_keeps_transactions(self, client, swap_lane):
        column, personnel = swap_lane
        _save(client, [column], personnel)
        res = client.delete('/api/personnel-board', params={'year': YEAR})
        assert res.status_code == 200
        assert res.json()['deletedCount'] == 1
        assert _load(client)['columns'] == []
        assert len(client.get('/api/swap-transactions').json()['data']) == 1

    def test_delete_empty_year(self, client):
        res = client.delete('/api/personnel-board', params={'year': 2500})
        assert res.json()['deletedCount'] == 0
