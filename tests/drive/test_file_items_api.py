"""文件树与存储配额接口的集成测试用例。"""

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from app.packages.drive.core.exceptions import BackendError
from app.packages.drive.core.security import create_access_token

API = "/api/v1"


def auth_headers(owner_id: int, is_admin: bool = False) -> dict[str, str]:
    token = create_access_token({"user_id": owner_id, "is_admin": is_admin})
    return {"Authorization": f"Bearer {token}"}


def _fund(client: TestClient, owner_id: int = 7, quota_kb: int = 1024) -> None:
    expire_at = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
    response = client.put(
        f"{API}/storage-quota/{owner_id}",
        json={"quotaKb": quota_kb, "expireAt": expire_at},
        headers=auth_headers(1, is_admin=True),
    )
    assert response.status_code == 200


def _upload(client: TestClient, name: str, data: bytes, parent_id=None, permission="private", owner_id=7):
    form = {"permission": permission}
    if parent_id is not None:
        form["parentId"] = str(parent_id)
    return client.post(
        f"{API}/file-items",
        files={"file": (name, data, "text/plain")},
        data=form,
        headers=auth_headers(owner_id),
    )


def test_missing_token_is_rejected(client: TestClient):
    """未提供令牌时应返回 401。"""
    response = client.get(f"{API}/file-items/tree")
    assert response.status_code == 401
    payload = response.json()
    assert payload["code"] == 401
    assert payload["msg"] == "缺少认证信息"


def test_invalid_token_is_rejected(client: TestClient):
    response = client.get(f"{API}/file-items/tree", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_upload_and_list_tree(client: TestClient, stores):
    """上传文件后应出现在文件树中，并占用配额。"""
    _fund(client)
    response = _upload(client, "a.txt", b"x" * 1536, permission="public")
    assert response.status_code == 200
    payload = response.json()
    assert payload["code"] == 200
    assert payload["data"]["objectKey"] == "u7/a.txt"
    assert payload["data"]["url"] == "https://s2.storage.test/b/u7/a.txt"
    assert response.headers["X-Request-ID"]

    tree = client.get(f"{API}/file-items/tree", headers=auth_headers(7)).json()["data"]
    assert [node["name"] for node in tree] == ["a.txt"]

    quota = client.get(f"{API}/storage-quota", headers=auth_headers(7)).json()["data"]
    assert quota["usedSpaceKb"] == 2
    assert quota["quotaKb"] == 1024


def test_upload_over_quota_returns_413(client: TestClient):
    _fund(client, quota_kb=1)
    response = _upload(client, "big.bin", b"x" * 2048)
    assert response.status_code == 413
    payload = response.json()
    assert payload["data"]["kind"] == "QuotaExceeded"


def test_upload_without_quota_is_refused(client: TestClient):
    response = _upload(client, "a.txt", b"x")
    assert response.status_code == 413


def test_directory_lifecycle(client: TestClient, stores):
    """目录创建、重命名、移入回收站、恢复与彻底删除。"""
    _fund(client)
    headers = auth_headers(7)
    created = client.post(
        f"{API}/file-items/directories", json={"name": "d", "permission": "public"}, headers=headers
    )
    assert created.status_code == 200
    directory_id = created.json()["data"]["id"]
    assert _upload(client, "x", b"hello", parent_id=directory_id).status_code == 200

    renamed = client.patch(f"{API}/file-items/{directory_id}/name", json={"newName": "e"}, headers=headers)
    assert renamed.json()["data"]["objectKey"] == "u7/e/"
    assert stores["S2"].keys("b") == ["u7/e/", "u7/e/x"]

    deleted = client.delete(f"{API}/file-items/{directory_id}", headers=headers)
    assert deleted.json()["data"] == {"id": directory_id, "count": 2}
    trash = client.get(f"{API}/file-items/tree/deleted", headers=headers).json()["data"]
    assert trash[0]["children"][0]["name"] == "x"

    restored = client.put(f"{API}/file-items/{directory_id}/restore", headers=headers)
    assert restored.json()["data"]["isDeleted"] is False

    removed = client.delete(f"{API}/file-items/{directory_id}/force", headers=headers)
    assert removed.json()["data"] == {"id": directory_id, "nodes": 2, "objects": 2, "released_kb": 1}
    assert stores["S2"].keys("b") == []


def test_duplicate_directory_returns_409(client: TestClient):
    headers = auth_headers(7)
    body = {"name": "d", "permission": "private"}
    assert client.post(f"{API}/file-items/directories", json=body, headers=headers).status_code == 200
    response = client.post(f"{API}/file-items/directories", json=body, headers=headers)
    assert response.status_code == 409
    assert response.json()["data"]["kind"] == "AlreadyExists"


def test_move_copy_and_permission(client: TestClient, stores):
    _fund(client)
    headers = auth_headers(7)
    target_id = client.post(
        f"{API}/file-items/directories", json={"name": "t", "permission": "private"}, headers=headers
    ).json()["data"]["id"]
    file_id = _upload(client, "a.txt", b"abc").json()["data"]["id"]

    copied = client.post(f"{API}/file-items/{file_id}/copy", json={"newParentId": target_id}, headers=headers)
    assert copied.json()["data"]["objectKey"] == "u7/t/a.txt"

    moved = client.post(f"{API}/file-items/{target_id}/move", json={"newParentId": target_id}, headers=headers)
    assert moved.status_code == 400
    assert moved.json()["data"]["kind"] == "InvalidTarget"

    changed = client.put(f"{API}/file-items/{target_id}/permission", json={"permission": "public"}, headers=headers)
    assert changed.json()["data"]["permission"] == "public"
    assert "arn:aws:s3:::b/u7/t/a.txt" in stores["S2"].policies["b"]


def test_other_owner_gets_403(client: TestClient):
    _fund(client)
    file_id = _upload(client, "a.txt", b"abc").json()["data"]["id"]
    response = client.patch(f"{API}/file-items/{file_id}/name", json={"newName": "b"}, headers=auth_headers(8))
    assert response.status_code == 403
    assert response.json()["data"]["kind"] == "Unauthorized"


def test_unknown_item_returns_404(client: TestClient):
    response = client.delete(f"{API}/file-items/424242", headers=auth_headers(7))
    assert response.status_code == 404
    assert response.json()["data"]["kind"] == "NotFound"


def test_presign_and_links(client: TestClient):
    """预签名链接需在有效期范围内，批量链接按 order 排序。"""
    _fund(client)
    headers = auth_headers(7)
    first = _upload(client, "a.txt", b"1").json()["data"]["id"]
    second = _upload(client, "b.txt", b"2").json()["data"]["id"]

    presigned = client.get(f"{API}/file-items/{first}/presign", params={"ttlSeconds": 120}, headers=headers)
    assert "X-Amz-Expires=120" in presigned.json()["data"]["url"]
    assert client.get(f"{API}/file-items/{first}/presign", params={"ttlSeconds": 0}, headers=headers).status_code == 400

    links = client.post(
        f"{API}/file-items/links",
        json={"items": [{"id": first, "order": 2}, {"id": second, "order": 1}], "isTemporary": True, "expireMinutes": 1},
        headers=headers,
    ).json()["data"]
    assert [link["id"] for link in links] == [second, first]
    assert all("X-Amz-Expires=60" in link["url"] for link in links)


def test_download_streams_file(client: TestClient):
    _fund(client)
    file_id = _upload(client, "hello.txt", b"hello world").json()["data"]["id"]
    response = client.get(f"{API}/file-items/{file_id}/download", headers=auth_headers(7))
    assert response.status_code == 200
    assert response.content == b"hello world"
    assert "hello.txt" in response.headers["Content-Disposition"]


def test_backend_failure_returns_502(client: TestClient, stores):
    stores["S2"].fail("ensure_bucket", BackendError("unreachable"))
    response = client.post(
        f"{API}/file-items/directories", json={"name": "d", "permission": "private"}, headers=auth_headers(7)
    )
    assert response.status_code == 502
    assert response.json()["data"]["kind"] == "BackendError"


def test_only_admin_can_recharge(client: TestClient):
    response = client.put(
        f"{API}/storage-quota/7",
        json={"quotaKb": 10, "expireAt": datetime.now(timezone.utc).isoformat()},
        headers=auth_headers(7),
    )
    assert response.status_code == 403


def test_health_check(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "healthy"}
