import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from fedbox import activitypub as ap
from fedbox import models
from fedbox.config import AP_CONTENT_TYPE
from fedbox.config import Config
from fedbox.httpsig import compute_digest
from tests import factories

BOB = "https://remote.test/u/bob"

_FOLLOW = {
    "@context": ap.AS_CTX,
    "type": "Follow",
    "id": f"{BOB}/follow/1",
    "actor": BOB,
    "object": "https://local.test/alice",
}

_AP_HEADERS = {"Content-Type": AP_CONTENT_TYPE}


def _post(client: TestClient, path: str, data, headers=None):
    body = data if isinstance(data, bytes) else json.dumps(data).encode()
    if headers is None:
        headers = _AP_HEADERS
    return client.post(path, content=body, headers=headers)


def test_inbox__enqueues_activity(db: Session, client: TestClient) -> None:
    # Given a local user
    user = factories.UserFactory(uid="alice")

    # When a remote server posts an activity to its inbox
    body = json.dumps(_FOLLOW).encode()
    response = _post(
        client,
        "/alice/inbox",
        body,
        headers={**_AP_HEADERS, "Digest": compute_digest(body)},
    )

    # Then it is accepted for later processing
    assert response.status_code == 202
    [item] = db.query(models.QueueItem).all()
    assert item.kind == models.QueueItemKind.INPUT
    assert item.user_id == user.id
    assert item.payload["message"] == _FOLLOW

    # And the request metadata needed to check the signature is kept
    assert item.payload["req"]["method"] == "POST"
    assert item.payload["req"]["path"] == "/alice/inbox"
    assert item.payload["req"]["headers"]["digest"] == compute_digest(body)


@pytest.mark.parametrize(
    "content_type",
    [
        "application/activity+json",
        'application/ld+json; profile="https://www.w3.org/ns/activitystreams"',
    ],
)
def test_shared_inbox__enqueues_activity(
    db: Session,
    client: TestClient,
    content_type: str,
) -> None:
    response = _post(
        client, "/shared-inbox", _FOLLOW, headers={"Content-Type": content_type}
    )

    assert response.status_code == 202
    [item] = db.query(models.QueueItem).all()
    assert item.kind == models.QueueItemKind.SHARED_INPUT
    assert item.user_id is None


def test_inbox__missing_content_type(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")

    response = _post(client, "/alice/inbox", _FOLLOW, headers={})

    assert response.status_code == 400
    assert db.query(models.QueueItem).count() == 0


def test_inbox__non_activitypub_content_type(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")

    response = _post(
        client, "/alice/inbox", _FOLLOW, headers={"Content-Type": "text/plain"}
    )

    assert response.status_code == 400


def test_inbox__malformed_json(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")

    for body in [b"{not json", b"[1, 2]"]:
        response = _post(client, "/alice/inbox", body)
        assert response.status_code == 400

    # The payloads are archived
    archives = db.query(models.ErrorArchive).order_by(models.ErrorArchive.id).all()
    assert [archive.payload for archive in archives] == ["{not json", "[1, 2]"]
    assert {archive.kind for archive in archives} == {"inbox"}


def test_inbox__blocked_instance(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")
    db.add(models.BlockedInstance(hostname="remote.test"))
    db.commit()

    response = _post(client, "/alice/inbox", _FOLLOW)

    assert response.status_code == 403
    assert db.query(models.QueueItem).count() == 0


def test_shared_inbox__blocked_instance(db: Session, client: TestClient) -> None:
    db.add(models.BlockedInstance(hostname="remote.test"))
    db.commit()

    response = _post(client, "/shared-inbox", _FOLLOW)

    assert response.status_code == 403


def test_inbox__unknown_user(db: Session, client: TestClient) -> None:
    response = _post(client, "/nobody/inbox", _FOLLOW)

    assert response.status_code == 404


def test_inbox__digest_mismatch(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")

    response = _post(
        client,
        "/alice/inbox",
        _FOLLOW,
        headers={**_AP_HEADERS, "Digest": compute_digest(b"something else")},
    )

    assert response.status_code == 400
    assert db.query(models.QueueItem).count() == 0


def test_inbox__muted_actor(db: Session, client: TestClient) -> None:
    user = factories.UserFactory(uid="alice")
    db.add(models.MutedActor(user_id=user.id, ap_actor_id=BOB))
    db.commit()

    response = _post(client, "/alice/inbox", _FOLLOW)

    assert response.status_code == 403
    assert db.query(models.QueueItem).count() == 0


def test_actor(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice", config={"name": "Alice", "bio": "Hi"})

    response = client.get("/alice")

    assert response.status_code == 200
    assert response.headers["content-type"] == AP_CONTENT_TYPE
    actor = response.json()
    assert actor["type"] == "Person"
    assert actor["id"] == "https://local.test/alice"
    assert actor["preferredUsername"] == "alice"
    assert actor["name"] == "Alice"
    assert actor["summary"] == "Hi"
    assert actor["inbox"] == "https://local.test/alice/inbox"
    assert actor["publicKey"] == {
        "id": "https://local.test/alice#main-key",
        "owner": "https://local.test/alice",
        "publicKeyPem": factories.LOCAL_PUBLIC_KEY,
    }
    assert "endpoints" not in actor


def test_actor__bot_with_shared_inbox(
    db: Session,
    client: TestClient,
    config: Config,
) -> None:
    config.shared_inboxes = True
    factories.UserFactory(uid="robot", config={"name": "robot", "bot": True})

    actor = client.get("/robot").json()

    assert actor["type"] == "Service"
    assert actor["endpoints"] == {"sharedInbox": "https://local.test/shared-inbox"}


def test_actor__unknown(db: Session, client: TestClient) -> None:
    assert client.get("/nobody").status_code == 404


def test_outbox(db: Session, client: TestClient) -> None:
    # Given public and private notes by a local user
    factories.UserFactory(uid="alice")
    public_note = factories.build_note_object(
        "https://local.test/alice", note_id="https://local.test/alice/p/1"
    )
    private_note = factories.build_note_object(
        "https://local.test/alice",
        to=[BOB],
        note_id="https://local.test/alice/p/2",
    )
    remote_note = factories.build_note_object(BOB)
    for note in [public_note, private_note, remote_note]:
        factories.ObjectFactory.from_ap_object(note)

    # When fetching its outbox
    response = client.get("/alice/outbox")

    # Then only the public note is listed, wrapped in a Create
    assert response.status_code == 200
    outbox = response.json()
    assert outbox["type"] == "OrderedCollection"
    assert outbox["id"] == "https://local.test/alice/outbox"
    assert outbox["totalItems"] == 1
    [create] = outbox["orderedItems"]
    assert create["type"] == "Create"
    assert create["id"] == "https://local.test/alice/p/1/Create"
    assert create["object"]["id"] == public_note["id"]


@pytest.mark.parametrize("folder", ["followers", "following"])
def test_collections(db: Session, client: TestClient, folder: str) -> None:
    factories.UserFactory(uid="alice")

    response = client.get(f"/alice/{folder}")

    assert response.status_code == 200
    assert response.headers["content-type"] == AP_CONTENT_TYPE
    assert response.json()["id"] == f"https://local.test/alice/{folder}"


def test_post(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")
    note = factories.build_note_object(
        "https://local.test/alice", note_id="https://local.test/alice/p/1"
    )
    factories.ObjectFactory.from_ap_object(note)

    response = client.get("/alice/p/1")

    assert response.status_code == 200
    assert response.json()["id"] == note["id"]
    assert response.json()["content"] == note["content"]


def test_post__not_public(db: Session, client: TestClient) -> None:
    factories.UserFactory(uid="alice")
    factories.ObjectFactory.from_ap_object(
        factories.build_note_object(
            "https://local.test/alice",
            to=[BOB],
            note_id="https://local.test/alice/p/1",
        )
    )

    assert client.get("/alice/p/1").status_code == 404
    assert client.get("/alice/p/2").status_code == 404
