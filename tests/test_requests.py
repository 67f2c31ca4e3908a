import pytest

from audioshare.services.requests import (
    REQUEST_STATUSES,
    SourceRequestError,
    SourceRequestNotFoundError,
    SourceRequestService,
    Tag,
    normalize_tags,
)
from audioshare.services.storage import MediaRepository


def test_create_and_fetch_request(repository: MediaRepository) -> None:
    service = SourceRequestService(repository)

    created = service.create(
        "  Great Podcast ",
        "https://example.com/feed",
        image_url="https://example.com/cover.jpg",
        tags=[{"name": "comedy", "color": "#ff0"}],
    )

    assert created.id > 0
    assert created.status == "requested"
    fetched = service.get(created.id)
    assert fetched.title == "Great Podcast"
    assert fetched.submitted_url == "https://example.com/feed"
    assert fetched.tags == [Tag(name="comedy", color="#ff0")]
    assert fetched.to_dict()["imageUrl"] == "https://example.com/cover.jpg"
    assert fetched.to_dict()["tags"] == [{"name": "comedy", "color": "#ff0"}]


@pytest.mark.parametrize(
    "title, url",
    [("", "https://example.com"), ("Title", "   ")],
)
def test_create_requires_title_and_url(repository: MediaRepository, title: str, url: str) -> None:
    with pytest.raises(SourceRequestError):
        SourceRequestService(repository).create(title, url)


def test_requests_are_grouped_by_status(repository: MediaRepository) -> None:
    service = SourceRequestService(repository)
    first = service.create("First", "https://example.com/1")
    second = service.create("Second", "https://example.com/2")
    service.update_status(second.id, "added", "abc123")

    grouped = service.list_grouped()

    assert set(grouped) == set(REQUEST_STATUSES)
    assert [request.id for request in grouped["requested"]] == [first.id]
    assert [request.id for request in grouped["added"]] == [second.id]
    assert grouped["added"][0].folder_share_key == "abc123"
    assert grouped["rejected"] == []


def test_update_status_validates_status_and_id(repository: MediaRepository) -> None:
    service = SourceRequestService(repository)
    created = service.create("Title", "https://example.com")

    with pytest.raises(SourceRequestError):
        service.update_status(created.id, "lost")
    with pytest.raises(SourceRequestNotFoundError):
        service.update_status(created.id + 100, "added")


def test_update_replaces_editable_fields(repository: MediaRepository) -> None:
    service = SourceRequestService(repository)
    created = service.create("Old", "https://example.com", tags=[{"name": "a"}])

    service.update(created.id, "New", image_url=None, tags=[{"name": "b", "color": "red"}])

    updated = service.get(created.id)
    assert updated.title == "New"
    assert updated.image_url is None
    assert updated.tags == [Tag(name="b", color="red")]
    assert updated.submitted_url == "https://example.com"
    with pytest.raises(SourceRequestNotFoundError):
        service.update(created.id + 1, "Other")


def test_delete_removes_request(repository: MediaRepository) -> None:
    service = SourceRequestService(repository)
    created = service.create("Title", "https://example.com")

    service.delete(created.id)

    with pytest.raises(SourceRequestNotFoundError):
        service.get(created.id)
    with pytest.raises(SourceRequestNotFoundError):
        service.delete(created.id)


def test_normalize_tags_rejects_bad_shapes() -> None:
    assert normalize_tags(None) == []
    with pytest.raises(SourceRequestError):
        normalize_tags(["comedy"])
    with pytest.raises(SourceRequestError):
        normalize_tags([{"color": "red"}])


def test_malformed_stored_tags_decode_as_empty(repository: MediaRepository) -> None:
    service = SourceRequestService(repository)
    created = service.create("Title", "https://example.com")
    repository.execute_write(
        "UPDATE source_requests SET tags = 'not json' WHERE id = ?",
        (created.id,),
        action="test.corrupt_tags",
        table="source_requests",
    )

    assert service.get(created.id).tags == []
