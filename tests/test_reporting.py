import csv
import pytest
from media_cleanup.exceptions import InvalidQueryError, AttachmentNotFoundError

@pytest.fixture
def scanned(app, app_attachment):
    """Runs a full scan over a small library and returns the attachment ids."""
    ids = {
        'small': app_attachment("2025/01/small.jpg", b"s" * 10, title="Small"),
        'large': app_attachment("2025/01/large.jpg", b"l" * 300, title="Large"),
        'medium': app_attachment("2025/01/medium.jpg", b"m" * 100, title="Medium"),
        'dup_a': app_attachment("2025/02/dup.jpg", b"dup", created_at="2025-02-01T00:00:00+00:00"),
        'dup_b': app_attachment("2025/03/dup.jpg", b"dup", created_at="2025-03-01T00:00:00+00:00"),
    }
    post = app.db.add_content_item(
        title="Gallery",
        body=f'<img class="wp-image-{ids["dup_a"]}" /><img class="wp-image-{ids["dup_b"]}" />',
    )
    ids['post'] = post
    app.conn.commit()
    app.orchestrator.run_sync()
    return ids

def test_results_sorted_by_size(app, scanned):
    page = app.query.get_results('unused')
    assert [i['attachment_id'] for i in page['items']] == [scanned['large'], scanned['medium'], scanned['small']]
    assert page['total'] == 3
    assert page['total_pages'] == 1

    page = app.query.get_results('unused', orderby='title', order='asc')
    assert [i['title'] for i in page['items']] == ["Large", "Medium", "Small"]

def test_paging(app, scanned):
    page = app.query.get_results('unused', page=2, per_page=2)
    assert page['page'] == 2
    assert page['total'] == 3
    assert page['total_pages'] == 2
    assert [i['attachment_id'] for i in page['items']] == [scanned['small']]

    assert app.query.get_results('unused', page=5, per_page=2)['items'] == []

def test_empty_results_have_zero_pages(app):
    page = app.query.get_results('oversized')
    assert page['items'] == []
    assert page['total'] == page['total_pages'] == 0

@pytest.mark.parametrize("kwargs", [
    {'result_type': 'bogus'},
    {'orderby': 'filename'},
    {'order': 'sideways'},
    {'page': 0},
    {'per_page': 0},
    {'per_page': 101},
    {'page': 'two'},
])
def test_invalid_queries(app, kwargs):
    with pytest.raises(InvalidQueryError):
        app.query.get_results(**kwargs)

def test_deleted_attachments_are_filtered(app, scanned):
    # Removed behind the tool's back, findings still stored
    app.db.delete_attachment(scanned['large'])
    app.conn.commit()

    items = app.query.get_results('unused')['items']
    assert scanned['large'] not in [i['attachment_id'] for i in items]

def test_items_carry_flag_and_trash_state(app, scanned):
    app.actions.flag([scanned['small']])
    app.actions.trash([scanned['medium']], confirm=True)

    items = {i['attachment_id']: i for i in app.query.get_results('unused')['items']}
    assert items[scanned['small']]['is_flagged'] is True
    assert items[scanned['small']]['is_trashed'] is False
    assert items[scanned['medium']]['is_trashed'] is True

def test_duplicate_groups(app, scanned):
    page = app.query.get_duplicate_groups()
    assert page['total'] == 1
    group = page['groups'][0]
    assert group['count'] == 2

    members = {m['attachment_id']: m for m in group['members']}
    assert set(members) == {scanned['dup_a'], scanned['dup_b']}
    assert members[scanned['dup_a']]['is_primary'] is True
    assert members[scanned['dup_a']]['reference_count'] == 1
    assert members[scanned['dup_b']]['is_trashed'] is False

def test_group_with_one_survivor_is_dropped(app, scanned):
    app.db.delete_attachment(scanned['dup_b'])
    app.conn.commit()
    page = app.query.get_duplicate_groups()
    assert page['groups'] == []
    assert page['total'] == 0

def test_duplicate_group_paging_limits(app):
    with pytest.raises(InvalidQueryError):
        app.query.get_duplicate_groups(per_page=51)

def test_result_detail(app, scanned):
    app.actions.flag([scanned['dup_a']])
    detail = app.query.get_result_detail(scanned['dup_a'])

    assert detail['attachment_id'] == scanned['dup_a']
    assert detail['filename'] == "dup.jpg"
    assert detail['file_size'] == 3
    assert detail['status'] == ['duplicate', 'flagged']
    assert detail['references'] == [
        {'source_type': 'content', 'source_id': scanned['post'], 'source_title': "Gallery"},
    ]
    assert detail['is_flagged'] is True
    assert detail['folder'] is None

def test_result_detail_unknown_attachment(app):
    with pytest.raises(AttachmentNotFoundError):
        app.query.get_result_detail(4242)

def test_flagged_and_trash_lists(app, scanned):
    app.actions.flag([scanned['small'], scanned['large']])
    app.actions.trash([scanned['medium']], confirm=True)

    flagged = app.query.get_results('flagged', orderby='file_size', order='asc')['items']
    assert [i['attachment_id'] for i in flagged] == [scanned['small'], scanned['large']]
    assert all(i['type'] == 'flagged' and i['flagged_at'] for i in flagged)

    trash = app.query.get_results('trash')['items']
    assert [i['attachment_id'] for i in trash] == [scanned['medium']]
    assert trash[0]['is_trashed'] is True
    assert trash[0]['trashed_at']

    app.actions.restore([scanned['medium']])
    assert app.query.get_results('trash')['items'] == []

def test_export_csv(app, scanned, tmp_path):
    output = tmp_path / "unused.csv"
    assert app.query.export_csv('unused', str(output)) == 3

    with open(output, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))

    assert rows[0][0] == "Attachment ID"
    assert [int(r[0]) for r in rows[1:]] == [scanned['large'], scanned['medium'], scanned['small']]
    assert rows[1][1] == "unused"
    assert rows[1][5] == "300"
