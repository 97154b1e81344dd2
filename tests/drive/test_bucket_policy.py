"""桶策略编辑：受管语句的增删、幂等性与未识别语句的保留。"""

import json

from app.packages.drive.services.bucket_policy import (
    BucketPolicyDocument,
    DenyAllStatement,
    OtherStatement,
    PublicReadStatement,
    apply_permission,
    object_arn,
)

ARN_A = "arn:aws:s3:::b/u7/a.txt"
ARN_B = "arn:aws:s3:::b/u7/b.txt"


def _statements(store, bucket="b"):
    return json.loads(store.policies[bucket])["Statement"]


def _by_sid(store, sid, bucket="b"):
    for statement in _statements(store, bucket):
        if statement.get("Sid") == sid:
            return statement
    return None


def test_object_arn_format():
    assert object_arn("b", "u7/a.txt") == ARN_A


def test_public_creates_canonical_statement():
    doc = apply_permission(BucketPolicyDocument.parse(None), ARN_A, "public")
    data = doc.to_dict()
    assert data["Version"] == "2012-10-17"
    assert data["Statement"] == [
        {
            "Sid": "PublicRead",
            "Effect": "Allow",
            "Principal": {"AWS": "*"},
            "Action": ["s3:GetObject"],
            "Resource": [ARN_A],
        }
    ]


def test_switching_permission_moves_arn_and_drops_empty_statement():
    doc = apply_permission(BucketPolicyDocument.parse(None), ARN_A, "public")
    apply_permission(doc, ARN_A, "private")
    assert doc.find(PublicReadStatement) is None
    assert doc.find(DenyAllStatement).resources == [ARN_A]
    assert doc.permission_of(ARN_A) == "private"


def test_apply_is_idempotent():
    once = apply_permission(BucketPolicyDocument.parse(None), ARN_A, "public").to_dict()
    twice = apply_permission(apply_permission(BucketPolicyDocument.parse(None), ARN_A, "public"), ARN_A, "public")
    assert twice.to_dict() == once
    assert twice.find(PublicReadStatement).resources.count(ARN_A) == 1


def test_unknown_statements_are_preserved_in_every_branch():
    foreign = {"Sid": "AllowBackup", "Effect": "Allow", "Principal": {"AWS": "arn:aws:iam::1:root"}, "Action": "s3:*", "Resource": "arn:aws:s3:::b/*"}
    raw = json.dumps({"Version": "2012-10-17", "Statement": [foreign]})
    doc = BucketPolicyDocument.parse(raw)
    apply_permission(doc, ARN_A, "public")
    apply_permission(doc, ARN_B, "private")
    apply_permission(doc, ARN_A, None, just_remove=True)
    apply_permission(doc, ARN_B, None, just_remove=True)
    assert doc.to_dict()["Statement"] == [foreign]
    assert isinstance(doc.statements[0], OtherStatement)


def test_string_resource_is_normalised_and_extra_fields_kept():
    raw = json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "PublicRead",
                    "Effect": "Allow",
                    "Principal": {"AWS": ["*"]},
                    "Action": ["s3:GetObject"],
                    "Resource": ARN_A,
                    "Condition": {"IpAddress": {"aws:SourceIp": "10.0.0.0/8"}},
                }
            ],
        }
    )
    doc = apply_permission(BucketPolicyDocument.parse(raw), ARN_B, "public")
    statement = doc.to_dict()["Statement"][0]
    assert statement["Resource"] == [ARN_A, ARN_B]
    assert statement["Condition"] == {"IpAddress": {"aws:SourceIp": "10.0.0.0/8"}}
    assert statement["Principal"] == {"AWS": ["*"]}


def test_manager_writes_policy_to_backend(policies, stores):
    assert policies.apply("S1", "b", "u7/a.txt", "public") is True
    assert _by_sid(stores["S1"], "PublicRead")["Resource"] == [ARN_A]
    assert _by_sid(stores["S1"], "DenyAllExceptOwner") is None
    assert "b" not in stores["S2"].policies


def test_manager_skips_write_when_unchanged(policies, stores):
    policies.apply("S1", "b", "u7/a.txt", "public")
    writes = stores["S1"].policy_writes
    assert policies.apply("S1", "b", "u7/a.txt", "public") is False
    assert stores["S1"].policy_writes == writes


def test_manager_deletes_policy_when_no_statement_left(policies, stores):
    policies.apply("S1", "b", "u7/a.txt", "private")
    policies.apply("S1", "b", "u7/a.txt", None, just_remove=True)
    assert "b" not in stores["S1"].policies


def test_remove_on_empty_bucket_is_noop(policies, stores):
    assert policies.apply("S1", "b", "u7/a.txt", None, just_remove=True) is False
    assert stores["S1"].policy_writes == 0


def test_arn_in_at_most_one_statement(policies, stores):
    for permission in ("public", "private", "public", "private"):
        policies.apply("S1", "b", "u7/a.txt", permission)
        policies.apply("S1", "b", "u7/b.txt", "public")
        public = set((_by_sid(stores["S1"], "PublicRead") or {}).get("Resource", []))
        private = set((_by_sid(stores["S1"], "DenyAllExceptOwner") or {}).get("Resource", []))
        assert not public & private
