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

"""boto3 adapters exposing LocalStack DynamoDB and S3 as capability interfaces.

Works with LocalStack and any other endpoint that speaks the AWS APIs. Clients
use static test credentials, path-style S3 addressing, short timeouts and no
SDK-level retries; readiness polling owns the retry policy.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, NoReturn

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from systest_infra import logger
from systest_infra.constants import (
    AWS_CLIENT_TIMEOUT_SECONDS,
    DEFAULT_AWS_REGION,
    LOCALSTACK_ACCESS_KEY,
    LOCALSTACK_SECRET_KEY,
)
from systest_infra.errors import EndpointUnavailable
from systest_infra.probes import NOT_FOUND

# Endpoint not reachable yet, connection reset, read timeout, 5xx or throttling reply.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (BotoCoreError, OSError, EndpointUnavailable)

_NOT_FOUND_CODES = frozenset({
    "404",
    "NoSuchBucket",
    "NoSuchKey",
    "NotFound",
    "ResourceNotFoundException",
})

_UNAVAILABLE_CODES = frozenset({
    "InternalError",
    "InternalFailure",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "SlowDown",
})


def _error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


def _is_not_found(err: ClientError) -> bool:
    return _error_code(err) in _NOT_FOUND_CODES


def _http_status(err: ClientError) -> int:
    return err.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0


def _is_unavailable(err: ClientError) -> bool:
    code = _error_code(err)
    return _http_status(err) >= 500 or code in _UNAVAILABLE_CODES or code.startswith("Throttl")


def _raise_client_error(err: ClientError, service: str) -> NoReturn:
    """Re-raise *err*, as EndpointUnavailable when the endpoint is booting or throttling."""
    if _is_unavailable(err):
        raise EndpointUnavailable(service, err.operation_name, _error_code(err), _http_status(err)) from err
    raise err


def aws_client(service: str, endpoint: str, region: str = DEFAULT_AWS_REGION):
    """Create a boto3 client for *service* at *endpoint*.

    Args:
        service: boto3 service name, e.g. ``dynamodb`` or ``s3``.
        endpoint: Endpoint URL, e.g. ``http://localhost:4566``.
        region: Signing region.

    Returns:
        A low-level boto3 client.
    """
    config = Config(
        connect_timeout=AWS_CLIENT_TIMEOUT_SECONDS,
        read_timeout=AWS_CLIENT_TIMEOUT_SECONDS,
        retries={"max_attempts": 1},
        s3={"addressing_style": "path"},
    )
    logger.debug("creating %s client for %s (region %s)", service, endpoint, region)
    return boto3.client(
        service,
        endpoint_url=endpoint,
        region_name=region,
        aws_access_key_id=LOCALSTACK_ACCESS_KEY,
        aws_secret_access_key=LOCALSTACK_SECRET_KEY,
        config=config,
    )


# ============================================================================
# DynamoDB
# ============================================================================

class DynamoTableCatalog:
    """The tables of one DynamoDB endpoint as a key-value store.

    Keys are table names. ``put`` creates a table from a ``create_table``
    definition and ``get`` returns the table description.
    """

    def __init__(self, client) -> None:
        self.client = client

    def put(self, key: str, value: Mapping[str, Any]) -> None:
        self.client.create_table(TableName=key, **value)
        logger.info("created dynamodb table %s", key)

    def get(self, key: str) -> dict | None:
        try:
            return self.client.describe_table(TableName=key)["Table"]
        except ClientError as err:
            if _is_not_found(err):
                return None
            _raise_client_error(err, "dynamodb")

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def list(self, prefix: str = "") -> list[str]:
        names: list[str] = []
        for page in self.client.get_paginator("list_tables").paginate():
            names.extend(page.get("TableNames", []))
        return sorted(name for name in names if name.startswith(prefix))

    def get_attribute(self, key: str, attr: str) -> Any:
        """Read a field of the table description, e.g. ``TableStatus``."""
        table = self.get(key)
        if table is None:
            return NOT_FOUND
        return table.get(attr, NOT_FOUND)


class DynamoTableStore:
    """Items of one DynamoDB table keyed by a single string hash key.

    Values are plain Python mappings converted with boto3's type
    (de)serializers, so numbers come back as ``Decimal``.
    """

    def __init__(self, client, table: str, key_attribute: str = "pk") -> None:
        self.client = client
        self.table = table
        self.key_attribute = key_attribute
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    def _key(self, key: str) -> dict:
        return {self.key_attribute: {"S": key}}

    def _decode(self, item: Mapping[str, Any]) -> dict[str, Any]:
        return {name: self._deserializer.deserialize(value) for name, value in item.items()}

    def put(self, key: str, value: Mapping[str, Any]) -> None:
        item = {name: self._serializer.serialize(v) for name, v in value.items()}
        item.update(self._key(key))
        self.client.put_item(TableName=self.table, Item=item)

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            response = self.client.get_item(TableName=self.table, Key=self._key(key), ConsistentRead=True)
        except ClientError as err:
            _raise_client_error(err, "dynamodb")
        item = response.get("Item")
        return self._decode(item) if item else None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def list(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("scan")
        for page in paginator.paginate(
            TableName=self.table,
            ProjectionExpression="#k",
            ExpressionAttributeNames={"#k": self.key_attribute},
        ):
            for item in page.get("Items", []):
                keys.append(item[self.key_attribute]["S"])
        return sorted(key for key in keys if key.startswith(prefix))

    def get_attribute(self, key: str, attr: str) -> Any:
        item = self.get(key)
        if item is None:
            return NOT_FOUND
        return item.get(attr, NOT_FOUND)


# ============================================================================
# S3
# ============================================================================

class S3BucketCatalog:
    """The buckets of one S3 endpoint as a key-value store.

    Keys are bucket names and values are bucket tag sets. ``put`` creates the
    bucket when it is missing and replaces its tags when any are given.
    """

    def __init__(self, client, region: str = DEFAULT_AWS_REGION) -> None:
        self.client = client
        self.region = region

    def put(self, key: str, value: Mapping[str, str] | None = None) -> None:
        if not key.strip():
            raise ValueError("bucket name is empty")
        if not self.exists(key):
            kwargs: dict[str, Any] = {"Bucket": key}
            if self.region != "us-east-1":
                kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            self.client.create_bucket(**kwargs)
            logger.info("created s3 bucket %s", key)
        if value:
            self.client.put_bucket_tagging(
                Bucket=key,
                Tagging={"TagSet": [{"Key": k, "Value": str(v)} for k, v in value.items()]},
            )

    def get(self, key: str) -> dict[str, str] | None:
        if not self.exists(key):
            return None
        try:
            tag_set = self.client.get_bucket_tagging(Bucket=key).get("TagSet", [])
        except ClientError as err:
            if _error_code(err) == "NoSuchTagSet":
                return {}
            _raise_client_error(err, "s3")
        return {tag["Key"]: tag["Value"] for tag in tag_set}

    def exists(self, key: str) -> bool:
        try:
            self.client.head_bucket(Bucket=key)
        except ClientError as err:
            if _is_not_found(err):
                return False
            _raise_client_error(err, "s3")
        return True

    def list(self, prefix: str = "") -> list[str]:
        buckets = self.client.list_buckets().get("Buckets", [])
        return sorted(b["Name"] for b in buckets if b["Name"].startswith(prefix))


class S3BucketStore:
    """Objects of one S3 bucket as a key-value store of bytes."""

    def __init__(self, client, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def put(self, key: str, value: bytes | str, content_type: str | None = None) -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        extra_args = {}
        if content_type:
            extra_args["ContentType"] = content_type
        self.client.put_object(Bucket=self.bucket, Key=key, Body=value, **extra_args)

    def get(self, key: str) -> bytes | None:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as err:
            if _is_not_found(err):
                return None
            _raise_client_error(err, "s3")
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as err:
            if _is_not_found(err):
                return False
            _raise_client_error(err, "s3")
        return True

    def list(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        for page in self.client.get_paginator("list_objects_v2").paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys
