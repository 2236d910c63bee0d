import json
import pytest
from media_cleanup.indexing.extract import (
    extract_image_classes,
    extract_block_ids,
    extract_media_text_ids,
    extract_generic_ids,
    extract_attachment_links,
    extract_upload_urls,
    extract_content_ids,
    extract_meta_ids,
)
from media_cleanup.library import strip_size_suffix

# --- Structural markers (no existence check) ---

def test_image_class_marker(library):
    html = '<img class="alignnone size-full wp-image-42" src="/x.jpg" />'
    assert extract_image_classes(html, library) == {42}

@pytest.mark.parametrize("block", ["image", "cover", "video", "audio", "file"])
def test_block_annotations(library, block):
    html = f'<!-- wp:{block} {{"id":17,"sizeSlug":"large"}} --><figure></figure><!-- /wp:{block} -->'
    assert extract_block_ids(html, library) == {17}

def test_block_annotation_ignores_other_blocks(library):
    html = '<!-- wp:paragraph {"id":17} --><p>x</p><!-- /wp:paragraph -->'
    assert extract_block_ids(html, library) == set()

def test_media_text_block(library):
    html = '<!-- wp:media-text {"mediaId":23,"mediaType":"image"} -->'
    assert extract_media_text_ids(html, library) == {23}

def test_classic_attachment_link(library):
    html = '<a href="https://example.com/?attachment_id=31">see</a>'
    assert extract_attachment_links(html, library) == {31}

# --- Generic ids are validated ---

def test_generic_ids_kept_only_for_existing_attachments(library, make_attachment):
    real_id = make_attachment("2025/01/gallery.jpg")
    html = f'<!-- wp:gallery {{"ids":[]}} --><!-- wp:x {{"id":{real_id}}} --><!-- wp:x {{"id":9999}} -->'
    assert extract_generic_ids(html, library) == {real_id}

# --- URL resolution ---

def test_strip_size_suffix():
    assert strip_size_suffix("2025/01/photo-300x200.jpg") == "2025/01/photo.jpg"
    assert strip_size_suffix("2025/01/photo-final.jpg") == "2025/01/photo-final.jpg"

def test_upload_url_resolves_size_variant(library, make_attachment):
    att_id = make_attachment("2025/01/photo.jpg")
    html = '<img src="https://example.com/wp-content/uploads/2025/01/photo-300x200.jpg" />'
    assert extract_upload_urls(html, library) == {att_id}

def test_protocol_relative_upload_url(library, make_attachment):
    att_id = make_attachment("2025/01/photo.jpg")
    html = '<img src="//cdn.example.com/wp-content/uploads/2025/01/photo.jpg?ver=2" />'
    assert extract_upload_urls(html, library) == {att_id}

def test_original_named_like_a_size_variant(library, make_attachment):
    wallpaper = make_attachment("2025/01/wallpaper-1920x1080.jpg")
    assert library.resolve_upload_url("https://example.com/wp-content/uploads/2025/01/wallpaper-1920x1080.jpg") == wallpaper
    # Its own generated variants still resolve to it
    assert library.resolve_upload_url("/wp-content/uploads/2025/01/wallpaper-1920x1080-300x169.jpg") == wallpaper

def test_unknown_upload_url_is_ignored(library):
    html = '<img src="https://example.com/wp-content/uploads/2025/01/missing.jpg" />'
    assert extract_upload_urls(html, library) == set()

# --- Full chains ---

def test_content_chain_combines_extractors(library, make_attachment):
    att_id = make_attachment("2025/02/hero.png")
    html = (
        '<!-- wp:image {"id":5} --><img class="wp-image-5" /><!-- /wp:image -->'
        f'<p><img src="https://example.com/wp-content/uploads/2025/02/hero-1024x768.png"></p>'
        '<a href="/?attachment_id=8">x</a>'
    )
    assert extract_content_ids(html, library) == {5, 8, att_id}

def test_content_chain_empty_text(library):
    assert extract_content_ids("", library) == set()

def test_meta_chain_with_escaped_slashes(library, make_attachment):
    att_id = make_attachment("2025/03/bg.jpg")
    other_id = make_attachment("2025/03/icon.png")
    builder_data = json.dumps([
        {"settings": {"background_image": {"url": "https://example.com/wp-content/uploads/2025/03/bg.jpg", "id": ""}}},
        {"settings": {"image": {"id": str(other_id)}}},
        {"settings": {"image_id": 4242}},
    ])
    # json.dumps escapes nothing here; builders often store "\/" so mimic that
    escaped = builder_data.replace("/", "\\/")
    assert extract_meta_ids(escaped, library) == {att_id, other_id}

def test_meta_chain_key_variants(library, make_attachment):
    ids = [make_attachment(f"2025/04/m{i}.jpg") for i in range(4)]
    data = json.dumps({
        "id": ids[0],
        "image_id": str(ids[1]),
        "attach_id": ids[2],
        "attachment_id": ids[3],
    })
    assert extract_meta_ids(data, library) == set(ids)
