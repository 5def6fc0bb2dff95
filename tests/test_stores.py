# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

from __future__ import annotations

import io
from decimal import Decimal

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber

from systest_infra.config import CapabilitySettings
from systest_infra.errors import EndpointUnavailable
from systest_infra.probes import NOT_FOUND, KeyValueStore, attribute_equals_probe, exists_probe
from systest_infra.provisioner import ProvisionedTarget, ReadinessProbes
from systest_infra.readiness import READY, NotYetReady, poll_until_ready
from systest_infra.stores import (
    TRANSIENT_ERRORS,
    DynamoTableCatalog,
    DynamoTableStore,
    S3BucketCatalog,
    S3BucketStore,
    aws_client,
)

pytestmark = pytest.mark.unit

ENDPOINT = "http://localhost:4566"


@pytest.fixture
def dynamodb():
    client = aws_client("dynamodb", ENDPOINT)
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def s3():
    client = aws_client("s3", ENDPOINT)
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


def test_client_uses_endpoint_and_region():
    client = aws_client("s3", ENDPOINT, region="us-east-1")

    assert client.meta.endpoint_url == ENDPOINT
    assert client.meta.region_name == "us-east-1"
    assert client.meta.config.s3["addressing_style"] == "path"


# =============================================================================
# DynamoDB tables
# =============================================================================


def test_table_catalog_status(dynamodb):
    client, stubber = dynamodb
    stubber.add_response(
        "describe_table",
        {"Table": {"TableName": "users", "TableStatus": "ACTIVE"}},
        {"TableName": "users"},
    )
    stubber.add_client_error(
        "describe_table", service_error_code="ResourceNotFoundException", http_status_code=400,
        expected_params={"TableName": "orders"},
    )
    catalog = DynamoTableCatalog(client)

    assert catalog.get_attribute("users", "TableStatus") == "ACTIVE"
    assert catalog.get_attribute("orders", "TableStatus") is NOT_FOUND


def test_table_catalog_exists_propagates_other_errors(dynamodb):
    client, stubber = dynamodb
    stubber.add_client_error("describe_table", service_error_code="AccessDeniedException", http_status_code=400)

    with pytest.raises(ClientError) as exc:
        DynamoTableCatalog(client).exists("users")
    assert exc.value.response["Error"]["Code"] == "AccessDeniedException"


def test_table_catalog_list_paginates(dynamodb):
    client, stubber = dynamodb
    stubber.add_response("list_tables", {"TableNames": ["users", "orders"], "LastEvaluatedTableName": "users"})
    stubber.add_response("list_tables", {"TableNames": ["user_events"]})

    assert DynamoTableCatalog(client).list("user") == ["user_events", "users"]


def test_table_catalog_put_creates_table(dynamodb):
    client, stubber = dynamodb
    definition = {
        "AttributeDefinitions": [{"AttributeName": "pk", "AttributeType": "S"}],
        "KeySchema": [{"AttributeName": "pk", "KeyType": "HASH"}],
        "BillingMode": "PAY_PER_REQUEST",
    }
    stubber.add_response("create_table", {}, {"TableName": "users", **definition})

    DynamoTableCatalog(client).put("users", definition)


def test_table_status_probe(dynamodb):
    client, stubber = dynamodb
    for status in ("CREATING", "ACTIVE"):
        stubber.add_response("describe_table", {"Table": {"TableName": "users", "TableStatus": status}})
    probe = attribute_equals_probe(DynamoTableCatalog(client), "users", "TableStatus", "ACTIVE")

    assert probe() == NotYetReady("CREATING")
    assert probe() is READY


# =============================================================================
# DynamoDB items
# =============================================================================


def test_table_store_round_trips_items(dynamodb):
    client, stubber = dynamodb
    stubber.add_response(
        "put_item", {},
        {"TableName": "users", "Item": {"pk": {"S": "u1"}, "status": {"S": "PENDING"}, "age": {"N": "30"}}},
    )
    stubber.add_response(
        "get_item",
        {"Item": {"pk": {"S": "u1"}, "status": {"S": "PENDING"}, "age": {"N": "30"}}},
        {"TableName": "users", "Key": {"pk": {"S": "u1"}}, "ConsistentRead": True},
    )
    store = DynamoTableStore(client, "users")

    store.put("u1", {"status": "PENDING", "age": 30})

    assert store.get("u1") == {"pk": "u1", "status": "PENDING", "age": Decimal("30")}


def test_table_store_missing_item(dynamodb):
    client, stubber = dynamodb
    stubber.add_response("get_item", {})
    stubber.add_response("get_item", {})
    store = DynamoTableStore(client, "users")

    assert store.exists("u2") is False
    assert store.get_attribute("u2", "status") is NOT_FOUND


def test_table_store_list_keys(dynamodb):
    client, stubber = dynamodb
    stubber.add_response(
        "scan",
        {"Items": [{"pk": {"S": "user#2"}}, {"pk": {"S": "order#1"}}, {"pk": {"S": "user#1"}}]},
        {"TableName": "users", "ProjectionExpression": "#k", "ExpressionAttributeNames": {"#k": "pk"}},
    )

    assert DynamoTableStore(client, "users").list("user#") == ["user#1", "user#2"]


def test_table_store_satisfies_key_value_store(dynamodb):
    client, _ = dynamodb
    assert isinstance(DynamoTableStore(client, "users"), KeyValueStore)


# =============================================================================
# S3
# =============================================================================


def test_bucket_catalog_creates_missing_bucket_with_tags(s3):
    client, stubber = s3
    stubber.add_client_error("head_bucket", service_error_code="404", http_status_code=404)
    stubber.add_response(
        "create_bucket", {},
        {"Bucket": "uploads", "CreateBucketConfiguration": {"LocationConstraint": "sa-east-1"}},
    )
    stubber.add_response(
        "put_bucket_tagging", {},
        {"Bucket": "uploads", "Tagging": {"TagSet": [{"Key": "env", "Value": "systest"}]}},
    )

    S3BucketCatalog(client).put("uploads", {"env": "systest"})


def test_bucket_catalog_existing_bucket_is_not_recreated(s3):
    client, stubber = s3
    stubber.add_response("head_bucket", {}, {"Bucket": "uploads"})

    S3BucketCatalog(client).put("uploads")


def test_bucket_exists_probe(s3):
    client, stubber = s3
    stubber.add_client_error("head_bucket", service_error_code="NoSuchBucket", http_status_code=404)
    stubber.add_response("head_bucket", {})
    probe = exists_probe(S3BucketCatalog(client), "uploads")

    assert probe() == NotYetReady(NOT_FOUND)
    assert probe() is READY


def test_bucket_catalog_tags(s3):
    client, stubber = s3
    stubber.add_response("head_bucket", {})
    stubber.add_client_error("get_bucket_tagging", service_error_code="NoSuchTagSet", http_status_code=404)

    assert S3BucketCatalog(client).get("uploads") == {}


def test_bucket_store_objects(s3):
    client, stubber = s3
    stubber.add_response("put_object", {}, {"Bucket": "uploads", "Key": "a.txt", "Body": b"hello"})
    stubber.add_response("get_object", {"Body": StreamingBody(io.BytesIO(b"hello"), 5)})
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
    store = S3BucketStore(client, "uploads")

    store.put("a.txt", "hello")

    assert store.get("a.txt") == b"hello"
    assert store.get("missing.txt") is None
    assert store.exists("missing.txt") is False


def test_bucket_store_list(s3):
    client, stubber = s3
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "in/a.csv"}, {"Key": "in/b.csv"}], "IsTruncated": False},
        {"Bucket": "uploads", "Prefix": "in/"},
    )

    assert S3BucketStore(client, "uploads").list("in/") == ["in/a.csv", "in/b.csv"]


# =============================================================================
# Unavailable endpoints
# =============================================================================


def no_sleep(seconds: float) -> None:
    pass


def test_table_catalog_server_error_is_unavailable(dynamodb):
    client, stubber = dynamodb
    stubber.add_client_error("describe_table", service_error_code="ServiceUnavailable", http_status_code=503)

    with pytest.raises(EndpointUnavailable) as exc:
        DynamoTableCatalog(client).get_attribute("users", "TableStatus")

    assert exc.value.service == "dynamodb"
    assert exc.value.code == "ServiceUnavailable"
    assert exc.value.status == 503
    assert isinstance(exc.value.__cause__, ClientError)


def test_table_catalog_throttling_is_unavailable(dynamodb):
    client, stubber = dynamodb
    stubber.add_client_error("describe_table", service_error_code="ThrottlingException", http_status_code=400)

    with pytest.raises(EndpointUnavailable):
        DynamoTableCatalog(client).exists("users")


def test_table_store_server_error_is_unavailable(dynamodb):
    client, stubber = dynamodb
    stubber.add_client_error("get_item", service_error_code="InternalServerError", http_status_code=500)

    with pytest.raises(EndpointUnavailable):
        DynamoTableStore(client, "users").get("alice")


def test_table_readiness_waits_through_unavailable_endpoint(dynamodb):
    client, stubber = dynamodb
    stubber.add_client_error("describe_table", service_error_code="ServiceUnavailable", http_status_code=503)
    stubber.add_response("describe_table", {"Table": {"TableName": "users", "TableStatus": "ACTIVE"}})
    target = ProvisionedTarget(key="default", name="systest-default", kube_context="kind-systest-default")
    settings = CapabilitySettings(tables=("users",), endpoint=ENDPOINT)
    ((description, check),) = ReadinessProbes(None, aws_client_factory=lambda *args: client).for_capability(
        target, "object_store", settings)

    assert description == "dynamodb table users"
    assert poll_until_ready(check, 5.0, 0.01, 0.02, sleep=no_sleep) == 2


def test_bucket_readiness_waits_through_slow_down(s3):
    client, stubber = s3
    stubber.add_client_error("head_bucket", service_error_code="SlowDown", http_status_code=503)
    stubber.add_response("head_bucket", {})
    check = exists_probe(S3BucketCatalog(client), "uploads", transient=TRANSIENT_ERRORS)

    assert poll_until_ready(check, 5.0, 0.01, 0.02, sleep=no_sleep) == 2


def test_bucket_store_server_error_is_unavailable(s3):
    client, stubber = s3
    stubber.add_client_error("head_object", service_error_code="500", http_status_code=500)

    with pytest.raises(EndpointUnavailable):
        S3BucketStore(client, "uploads").exists("report.csv")
