import pytest
from media_cleanup.indexing.reference_index import ReferenceIndex

@pytest.fixture
def index(db_ops, library, settings, hooks):
    return ReferenceIndex(db_ops, library, settings, hooks)

def test_body_featured_and_meta_references(index, db_ops, make_attachment):
    body_id = make_attachment("2025/01/body.jpg")
    featured_id = make_attachment("2025/01/featured.jpg")
    meta_id = make_attachment("2025/01/meta.jpg")
    unused_id = make_attachment("2025/01/unused.jpg")

    post_id = db_ops.add_content_item(
        title="Hello",
        body=f'<img class="wp-image-{body_id}" />',
        featured_image_id=featured_id,
    )
    db_ops.set_content_meta(post_id, "_elementor_data", [{"image": {"id": meta_id}}])

    assert index.build_index_batch(0, 100) == 1

    assert index.get_references(body_id) == [{'source_type': 'content', 'source_id': post_id}]
    assert index.get_references(featured_id) == [{'source_type': 'featured_image', 'source_id': post_id}]
    assert index.get_references(meta_id) == [{'source_type': 'page_builder', 'source_id': post_id}]
    assert not index.is_referenced(unused_id)

def test_non_indexable_content_is_skipped(index, db_ops, make_attachment):
    att_id = make_attachment("2025/01/a.jpg")
    db_ops.add_content_item(body=f'<img class="wp-image-{att_id}" />', status="trash")

    assert index.get_total_items() == 0
    assert index.build_index_batch(0, 100) == 0
    assert not index.is_referenced(att_id)

def test_batches_walk_content_in_id_order(index, db_ops):
    for i in range(250):
        db_ops.add_content_item(title=f"post {i}")

    assert index.get_total_items() == 250
    assert index.build_index_batch(0, 100) == 100
    assert index.build_index_batch(100, 100) == 100
    assert index.build_index_batch(200, 100) == 50

def test_batch_past_end_has_no_side_effects(index, db_ops, conn, make_attachment):
    att_id = make_attachment("2025/01/a.jpg")
    db_ops.add_content_item(body=f'<img class="wp-image-{att_id}" />')

    before = conn.execute("SELECT COUNT(*) FROM media_references").fetchone()[0]
    assert index.build_index_batch(5, 100) == 0
    after = conn.execute("SELECT COUNT(*) FROM media_references").fetchone()[0]
    assert before == after == 0

def test_rebuilding_a_batch_does_not_duplicate_references(index, db_ops, make_attachment):
    att_id = make_attachment("2025/01/a.jpg")
    db_ops.add_content_item(body=f'<img class="wp-image-{att_id}" /><!-- wp:image {{"id":{att_id}}} -->')

    index.build_index_batch(0, 10)
    index.build_index_batch(0, 10)

    assert len(index.get_references(att_id)) == 1

def test_global_references(index, db_ops, make_attachment):
    icon_id = make_attachment("2025/01/icon.png")
    logo_id = make_attachment("2025/01/logo.png")
    widget_id = make_attachment("2025/01/banner.jpg")
    inactive_id = make_attachment("2025/01/old-banner.jpg")

    db_ops.set_option("site_icon", icon_id)
    db_ops.set_option("custom_logo", logo_id)
    db_ops.set_option("widgets", {
        "sidebar-1": [{"type": "media_image", "url": "https://example.com/wp-content/uploads/2025/01/banner-300x200.jpg"}],
        "inactive": [{"type": "media_image", "attachment_id": inactive_id}],
    })

    index.build_global_references()

    assert index.get_references(icon_id) == [{'source_type': 'site_icon', 'source_id': 0}]
    assert index.get_references(logo_id) == [{'source_type': 'custom_logo', 'source_id': 0}]
    # Size-suffixed widget URL resolves to the original attachment
    assert index.is_referenced(widget_id)
    assert index.get_references(widget_id) == [{'source_type': 'widget', 'source_id': 0}]
    assert not index.is_referenced(inactive_id)

def test_widget_url_with_non_ascii_filename(index, make_attachment, db_ops):
    cafe_id = make_attachment("2025/01/café.jpg")
    db_ops.set_option("widgets", {
        "sidebar-1": [{"type": "media_image", "url": "https://example.com/wp-content/uploads/2025/01/café-300x200.jpg"}],
    })

    index.build_global_references()

    assert index.get_references(cafe_id) == [{'source_type': 'widget', 'source_id': 0}]


def test_clear_empties_index(index, db_ops, make_attachment):
    att_id = make_attachment("2025/01/a.jpg")
    db_ops.set_option("site_icon", att_id)
    index.build_global_references()
    assert index.is_referenced(att_id)

    index.clear()
    assert not index.is_referenced(att_id)
    assert index.get_references(att_id) == []

def test_custom_reference_source(index, db_ops, hooks, make_attachment):
    att_id = make_attachment("2025/01/a.jpg")
    post_id = db_ops.add_content_item(title="Shop item")
    hooks.register_reference_source("WooCommerce Gallery!", lambda source_id: [att_id] if source_id == post_id else [])

    index.build_index_batch(0, 100)

    assert index.get_references(att_id) == [{'source_type': 'woocommercegallery', 'source_id': post_id}]

@pytest.mark.parametrize("depth, expected", [
    ("full", {"content", "featured_image", "page_builder", "custom"}),
    ("featured_only", {"featured_image", "page_builder", "custom"}),
    ("none", {"custom"}),
])
def test_content_scan_depth(index, db_ops, settings, hooks, make_attachment, depth, expected):
    body_id = make_attachment("2025/01/body.jpg")
    featured_id = make_attachment("2025/01/featured.jpg")
    meta_id = make_attachment("2025/01/meta.jpg")
    custom_id = make_attachment("2025/01/custom.jpg")

    post_id = db_ops.add_content_item(body=f'<img class="wp-image-{body_id}" />', featured_image_id=featured_id)
    db_ops.set_content_meta(post_id, "panels_data", {"widgets": [{"attachment_id": meta_id}]})
    hooks.register_reference_source("custom", lambda source_id: [custom_id])
    settings.update({"content_scan_depth": depth})

    index.build_index_batch(0, 100)

    found = set()
    for att_id in (body_id, featured_id, meta_id, custom_id):
        found.update(ref['source_type'] for ref in index.get_references(att_id))
    assert found == expected

def test_extra_meta_keys_from_settings(index, db_ops, settings, make_attachment):
    att_id = make_attachment("2025/01/a.jpg")
    post_id = db_ops.add_content_item()
    db_ops.set_content_meta(post_id, "_my_builder", {"image_id": att_id})

    index.build_index_batch(0, 100)
    assert not index.is_referenced(att_id)

    index.clear()
    settings.update({"extra_meta_keys": "_my_builder"})
    index.build_index_batch(0, 100)
    assert index.is_referenced(att_id)

def test_is_referenced_matches_get_references(index, db_ops, make_attachment):
    ids = [make_attachment(f"2025/01/{i}.jpg") for i in range(5)]
    db_ops.add_content_item(body="".join(f'<img class="wp-image-{i}" />' for i in ids[:2]))
    index.build_index_batch(0, 100)

    for att_id in ids:
        assert index.is_referenced(att_id) == bool(index.get_references(att_id))
