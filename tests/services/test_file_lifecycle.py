import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from codedrop.exceptions import ExpiredError, NotFoundError, StorageError, ValidationError
from codedrop.services import tokens
from codedrop.services.content_cipher import ContentCipher
from codedrop.services.file_lifecycle import FileLifecycleManager


def _upload(lifecycle, owner, data=b"hello world", name="hello.txt"):
    return lifecycle.create_file(
        owner_id=owner.id,
        name=name,
        size=len(data),
        content_type="text/plain",
        data=data,
    )


def test_create_file_persists_waiting_record(lifecycle, storage, owner, clock):
    rec = _upload(lifecycle, owner)

    assert rec.id is not None
    assert rec.status == "WAITING_FOR_DOWNLOAD"
    assert len(rec.connection_code) == 2
    assert rec.expires_at == clock() + timedelta(minutes=10)
    assert rec.download_token is None

    fetched = storage.get_file_by_connection_code(rec.connection_code)
    assert fetched is not None
    assert fetched.id == rec.id
    assert fetched.user_id == owner.id


def test_content_is_encrypted_at_rest(lifecycle, owner):
    rec = _upload(lifecycle, owner, data=b"top secret bytes")

    assert rec.content != b"top secret bytes"
    assert lifecycle.read_content(rec) == b"top secret bytes"


@pytest.mark.parametrize(
    "name, size, data",
    [
        ("a.txt", 0, b""),
        ("a.txt", 3, b"abcd"),
        ("", 4, b"abcd"),
    ],
)
def test_create_file_rejects_invalid_input(lifecycle, owner, name, size, data):
    with pytest.raises(ValidationError):
        lifecycle.create_file(
            owner_id=owner.id, name=name, size=size, content_type="text/plain", data=data
        )


def test_create_file_rejects_oversized_content(storage, cipher, clock, owner):
    lifecycle = FileLifecycleManager(storage, cipher=cipher, now=clock, max_bytes=4)

    with pytest.raises(ValidationError):
        _upload(lifecycle, owner, data=b"12345")


def test_create_file_retries_when_code_is_taken(lifecycle, storage, owner, clock, monkeypatch):
    first = _upload(lifecycle, owner)
    codes = iter([first.connection_code, "zz"])  # first collides, second succeeds
    monkeypatch.setattr(lifecycle.allocator, "allocate", lambda: next(codes))

    rec = _upload(lifecycle, owner)

    assert rec.connection_code == "zz"


def test_create_file_gives_up_after_repeated_conflicts(storage, cipher, clock, owner, monkeypatch):
    lifecycle = FileLifecycleManager(storage, cipher=cipher, now=clock, max_attempts=3)
    taken = _upload(lifecycle, owner)
    monkeypatch.setattr(lifecycle.allocator, "allocate", lambda: taken.connection_code)

    with pytest.raises(StorageError):
        _upload(lifecycle, owner)


def test_stale_file_gives_its_code_back(lifecycle, storage, owner, clock, monkeypatch):
    old = _upload(lifecycle, owner)
    clock.advance(minutes=11)
    monkeypatch.setattr(lifecycle.allocator, "allocate", lambda: old.connection_code)

    new = _upload(lifecycle, owner)

    assert new.connection_code == old.connection_code
    assert storage.get_file_by_id(old.id).connection_code is None
    assert storage.get_file_by_connection_code(old.connection_code).id == new.id


def test_resolve_code_round_trip_until_expiry(lifecycle, owner, recipient, clock):
    rec = _upload(lifecycle, owner)

    assert lifecycle.resolve_code(rec.connection_code, recipient.id).id == rec.id

    clock.advance(minutes=9, seconds=59)
    assert lifecycle.resolve_code(rec.connection_code).id == rec.id

    clock.advance(seconds=1)
    with pytest.raises(NotFoundError):
        lifecycle.resolve_code(rec.connection_code)


def test_resolve_code_unknown_code(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.resolve_code("Zz9")


def test_resolve_code_requires_a_code(lifecycle):
    with pytest.raises(ValidationError):
        lifecycle.resolve_code("")


def test_resolve_code_rejects_owner_like_an_invalid_code(lifecycle, owner):
    rec = _upload(lifecycle, owner)

    with pytest.raises(NotFoundError) as excinfo:
        lifecycle.resolve_code(rec.connection_code, owner.id)
    assert excinfo.value.message == "Invalid connection code"


def test_resolve_code_after_download(lifecycle, owner):
    rec = _upload(lifecycle, owner)
    lifecycle.mark_downloaded(rec.id)

    with pytest.raises(NotFoundError):
        lifecycle.resolve_code(rec.connection_code)

def test_issue_download_token(lifecycle, storage, owner, clock):
    rec = _upload(lifecycle, owner)

    grant = lifecycle.issue_download_token(rec.id)

    assert grant.url == f"/files/download/{grant.token}"
    assert grant.expires_at == clock() + timedelta(minutes=3)
    stored = storage.get_file_by_id(rec.id)
    # Only the digest is persisted
    assert stored.download_token == tokens.digest(grant.token)
    assert stored.download_token != grant.token
    assert stored.download_expires_at == grant.expires_at


def test_download_tokens_are_long_and_distinct():
    issued = {tokens.new_download_token() for _ in range(50)}

    assert len(issued) == 50
    assert all(len(t) == 22 and t.isalnum() for t in issued)


def test_redeem_token_flips_status_once(lifecycle, storage, owner, recipient):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)

    redeemed, content = lifecycle.redeem_token(grant.token, recipient.id)

    assert redeemed.id == rec.id
    assert redeemed.status == "DOWNLOADED"
    assert content == b"hello world"
    stored = storage.get_file_by_id(rec.id)
    assert stored.status == "DOWNLOADED"
    assert stored.downloaded_by == recipient.id
    with pytest.raises(NotFoundError):
        lifecycle.redeem_token(grant.token)


def test_redeem_token_without_caller_leaves_downloader_unset(lifecycle, storage, owner):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)

    lifecycle.redeem_token(grant.token)

    assert storage.get_file_by_id(rec.id).downloaded_by is None


def test_redeem_token_at_exact_expiry_is_expired(lifecycle, storage, owner, clock):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)

    clock.advance(minutes=3)

    with pytest.raises(ExpiredError):
        lifecycle.redeem_token(grant.token)
    assert storage.get_file_by_id(rec.id).status == "WAITING_FOR_DOWNLOAD"


def test_redeem_token_just_before_expiry(lifecycle, owner, clock):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)

    clock.advance(minutes=2, seconds=59)

    record, _ = lifecycle.redeem_token(grant.token)
    assert record.id == rec.id


def test_redeem_token_outlives_code_expiry(lifecycle, owner, clock):
    rec = _upload(lifecycle, owner)
    clock.advance(minutes=9)
    grant = lifecycle.issue_download_token(rec.id)
    clock.advance(minutes=2)

    record, _ = lifecycle.redeem_token(grant.token)
    assert record.id == rec.id


def test_redeem_unknown_token(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.redeem_token("not-a-token")


def test_undecryptable_file_is_not_consumed(lifecycle, storage, owner, clock):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)
    # Same rows, but the server secret changed since upload
    other = FileLifecycleManager(
        storage, cipher=ContentCipher(secret="rotated-secret", iterations=1000), now=clock
    )

    with pytest.raises(StorageError):
        other.redeem_token(grant.token)

    assert storage.get_file_by_id(rec.id).status == "WAITING_FOR_DOWNLOAD"
    record, content = lifecycle.redeem_token(grant.token)
    assert content == b"hello world"


def test_mark_downloaded_is_idempotent(lifecycle, storage, owner):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)

    assert lifecycle.mark_downloaded(rec.id) is True
    assert lifecycle.mark_downloaded(rec.id) is False
    assert storage.get_file_by_id(rec.id).status == "DOWNLOADED"
    with pytest.raises(NotFoundError):
        lifecycle.redeem_token(grant.token)


def test_mark_downloaded_by_code(lifecycle, storage, owner, recipient):
    rec = _upload(lifecycle, owner)

    marked = lifecycle.mark_downloaded_by_code(rec.connection_code, recipient.id)

    assert marked.status == "DOWNLOADED"
    assert storage.get_file_by_id(rec.id).downloaded_by == recipient.id
    with pytest.raises(NotFoundError):
        lifecycle.mark_downloaded_by_code(rec.connection_code, recipient.id)
    with pytest.raises(NotFoundError):
        lifecycle.mark_downloaded_by_code("nope")
    with pytest.raises(ValidationError):
        lifecycle.mark_downloaded_by_code("")


def test_mark_downloaded_by_code_only_accepts_live_codes(lifecycle, storage, owner, clock):
    rec = _upload(lifecycle, owner)

    with pytest.raises(NotFoundError):
        lifecycle.mark_downloaded_by_code(rec.connection_code, owner.id)

    clock.advance(minutes=10)
    with pytest.raises(NotFoundError):
        lifecycle.mark_downloaded_by_code(rec.connection_code)
    assert storage.get_file_by_id(rec.id).status == "WAITING_FOR_DOWNLOAD"


def test_create_file_honours_requested_expiry(lifecycle, owner, clock):
    rec = lifecycle.create_file(
        owner_id=owner.id, name="a.txt", size=4, content_type="text/plain",
        data=b"abcd", expiry_minutes=45,
    )

    assert rec.expires_at == clock() + timedelta(minutes=45)
    clock.advance(minutes=44)
    assert lifecycle.resolve_code(rec.connection_code).id == rec.id


@pytest.mark.parametrize("requested", [None, 0, -5])
def test_create_file_defaults_expiry(lifecycle, owner, clock, requested):
    rec = lifecycle.create_file(
        owner_id=owner.id, name="a.txt", size=4, content_type="text/plain",
        data=b"abcd", expiry_minutes=requested,
    )

    assert rec.expires_at == clock() + timedelta(minutes=10)


def test_create_file_rejects_expiry_above_limit(lifecycle, storage, owner, clock):
    with pytest.raises(ValidationError):
        lifecycle.create_file(
            owner_id=owner.id, name="a.txt", size=4, content_type="text/plain",
            data=b"abcd", expiry_minutes=61,
        )
    assert storage.count_active_files(clock()) == 0


def test_concurrent_redemption_serves_exactly_once(storage_factory, cipher, clock):
    seed = storage_factory()
    owner = seed.create_user(id="owner-1", name="Ada", email="ada@example.com")
    seeding = FileLifecycleManager(seed, cipher=cipher, now=clock)
    rec = _upload(seeding, owner)
    grant = seeding.issue_download_token(rec.id)

    threads = 4
    barrier = threading.Barrier(threads)
    # One manager per thread so SQL runs use separate sessions
    managers = [
        FileLifecycleManager(storage_factory(), cipher=cipher, now=clock)
        for _ in range(threads)
    ]

    def redeem(lifecycle):
        barrier.wait(timeout=10)
        try:
            lifecycle.redeem_token(grant.token)
            return "ok"
        except NotFoundError:
            return "missing"

    with ThreadPoolExecutor(max_workers=threads) as pool:
        outcomes = list(pool.map(redeem, managers))

    assert outcomes.count("ok") == 1
    assert outcomes.count("missing") == threads - 1
    assert seed.get_file_by_id(rec.id).status == "DOWNLOADED"


def test_lost_status_race_reports_not_found(lifecycle, storage, owner, monkeypatch):
    rec = _upload(lifecycle, owner)
    grant = lifecycle.issue_download_token(rec.id)
    # Another request flips the status between our read and our write
    monkeypatch.setattr(storage, "set_status", lambda *args, **kwargs: False)

    with pytest.raises(NotFoundError):
        lifecycle.redeem_token(grant.token)
