"""对象存储后端：boto3 错误翻译、后端注册表与请求截止时间。"""

import time

import boto3
import pytest
from botocore.config import Config
from botocore.exceptions import ReadTimeoutError
from botocore.stub import Stubber

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.exceptions import (
    BackendError,
    BackendTimeoutError,
    ConfigurationError,
    NotFoundError,
)
from app.packages.drive.services.storage_backends import (
    BackendRegistry,
    S3ObjectStore,
    build_registry,
    check_deadline,
    remaining_time,
    request_deadline,
)


@pytest.fixture()
def s3_store():
    client = boto3.client(
        "s3",
        endpoint_url="http://s1.storage.test",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
        config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    )
    store = S3ObjectStore(
        endpoint_url="http://s1.storage.test",
        access_key="test",
        secret_key="test",
        region="us-east-1",
        client=client,
    )
    with Stubber(client) as stubber:
        yield store, stubber


def test_exists_maps_missing_key_to_false(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
    stubber.add_response("head_object", {"ContentLength": 3}, {"Bucket": "b", "Key": "u7/a.txt"})
    assert store.exists("b", "u7/missing.txt") is False
    assert store.exists("b", "u7/a.txt") is True


def test_exists_reports_other_errors_as_backend_error(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("head_object", service_error_code="AccessDenied", http_status_code=403)
    with pytest.raises(BackendError) as exc_info:
        store.exists("b", "u7/a.txt")
    assert exc_info.value.data["kind"] == "BackendError"
    assert exc_info.value.data["code"] == "AccessDenied"


def test_copy_of_missing_source_is_not_found(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("copy_object", service_error_code="NoSuchKey", http_status_code=404)
    with pytest.raises(NotFoundError):
        store.copy("b", "u7/a.txt", "u7/b.txt")


def test_remove_missing_key_is_silent(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("delete_object", service_error_code="NoSuchKey", http_status_code=404)
    store.remove("b", "u7/a.txt")
    stubber.assert_no_pending_responses()


def test_missing_bucket_policy_reads_as_none(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("get_bucket_policy", service_error_code="NoSuchBucketPolicy", http_status_code=404)
    stubber.add_response("get_bucket_policy", {"Policy": '{"Statement": []}'}, {"Bucket": "b"})
    assert store.get_policy("b") is None
    assert store.get_policy("b") == '{"Statement": []}'


def test_ensure_bucket_creates_when_missing(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("head_bucket", service_error_code="404", http_status_code=404)
    stubber.add_response("create_bucket", {}, {"Bucket": "b"})
    store.ensure_bucket("b")
    stubber.assert_no_pending_responses()


def test_list_walks_every_page(s3_store):
    store, stubber = s3_store
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "u7/d/"}, {"Key": "u7/d/a.txt"}], "IsTruncated": True, "NextContinuationToken": "t"},
        {"Bucket": "b", "Prefix": "u7/d/"},
    )
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "u7/d/e/b.txt"}], "IsTruncated": False},
        {"Bucket": "b", "Prefix": "u7/d/", "ContinuationToken": "t"},
    )
    assert list(store.list("b", "u7/d/")) == ["u7/d/", "u7/d/a.txt", "u7/d/e/b.txt"]


def test_presign_embeds_ttl(s3_store):
    store, _ = s3_store
    url = store.presign_get("b", "u7/a.txt", 60)
    assert url.startswith("http://s1.storage.test/b/u7/a.txt?")
    assert "X-Amz-Expires=60" in url


def test_read_timeout_is_reported_as_backend_timeout():
    class SlowClient:
        def head_object(self, **kwargs):
            raise ReadTimeoutError(endpoint_url="http://s1.storage.test")

    store = S3ObjectStore(
        endpoint_url="http://s1.storage.test",
        access_key="test",
        secret_key="test",
        region="us-east-1",
        client=SlowClient(),
    )
    with pytest.raises(BackendTimeoutError) as exc_info:
        store.exists("b", "u7/a.txt")
    assert exc_info.value.status_code == 504


def test_expired_deadline_stops_backend_calls(stores):
    store = stores["S1"]
    with request_deadline(0.01):
        time.sleep(0.05)
        assert remaining_time() <= 0
        with pytest.raises(BackendTimeoutError):
            store.exists("b", "u7/a.txt")
    assert store.calls == []
    assert remaining_time() is None


def test_nested_deadline_keeps_the_earlier_one():
    with request_deadline(60):
        outer = remaining_time()
        with request_deadline(600):
            assert remaining_time() <= outer
    check_deadline("noop")


def test_registry_resolves_known_servers(registry, stores):
    assert registry.keys() == ["S1", "S2", "S3"]
    assert registry.resolve("S2") is stores["S2"]
    assert registry.host("S3") == "s3.storage.test"


def test_registry_unknown_server_is_configuration_error(registry):
    with pytest.raises(ConfigurationError) as exc_info:
        registry.resolve("S9")
    assert exc_info.value.status_code == 500


def test_pick_for_owner_is_deterministic(registry):
    assert registry.pick_for_owner(7) == "S2"
    assert registry.pick_for_owner(9) == "S1"
    assert registry.pick_for_owner(7) == registry.pick_for_owner(7)


def test_empty_registry_cannot_pick():
    with pytest.raises(ConfigurationError):
        BackendRegistry({}).pick_for_owner(1)


def test_build_registry_from_settings():
    settings = get_settings().model_copy(
        update={"storage_s1_host": "s1.example", "storage_s2_host": "s2.example", "storage_s3_host": "s3.example"}
    )
    registry = build_registry(settings)
    assert registry.keys() == ["S1", "S2", "S3"]
    assert registry.host("S1") == "s1.example"
    assert isinstance(registry.resolve("S3"), S3ObjectStore)


def test_build_registry_rejects_missing_host():
    settings = get_settings().model_copy(update={"storage_s2_host": ""})
    with pytest.raises(ConfigurationError):
        build_registry(settings)


def test_drop_bucket_is_idempotent(s3_store):
    store, stubber = s3_store
    stubber.add_response("delete_bucket", {}, {"Bucket": "b"})
    stubber.add_client_error("delete_bucket", service_error_code="NoSuchBucket", http_status_code=404)
    store.drop_bucket("b")
    store.drop_bucket("b")
    stubber.assert_no_pending_responses()
