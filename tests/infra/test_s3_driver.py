"""Tests for the S3 storage driver."""

import io
from unittest.mock import MagicMock, patch

import pytest
from botocore import UNSIGNED
from botocore.exceptions import ClientError

from objstore.common.config import (
    BucketConfig,
    BucketProvider,
    MemoryProviderConfig,
    S3ProviderConfig,
)
from objstore.infra.storage.context import Context
from objstore.infra.storage.errors import (
    ClientConstructionError,
    ObjectNotExistError,
    OperationCancelledError,
    PreconditionFailedError,
)
from objstore.infra.storage.providers.s3 import (
    S3_DEFAULT_CONTENT_TYPE,
    S3Driver,
    map_error,
)
from objstore.infra.storage.types import (
    AttrsData,
    CloudObject,
    DownloadData,
    ListData,
    Preconditions,
    RemoveData,
    UploadAttrs,
    UploadData,
)


def client_error(code: str, operation: str = "GetObject", status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} message"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class TestS3Driver:
    """Test S3Driver and S3Bucket against a mocked boto3 client."""

    @pytest.fixture
    def mock_s3(self):
        """Mock boto3 S3 client."""
        mock_client = MagicMock()
        with patch.object(S3Driver, "_build_s3_client", return_value=mock_client):
            yield mock_client

    @pytest.fixture
    def provider(self):
        return BucketProvider(
            s3=S3ProviderConfig(
                endpoint_url="http://localhost:9000",
                region="us-east-1",
                access_key_id="test-key",
                secret_access_key="test-secret",
                use_ssl=False,
                addressing_style="path",
                upload_part_size=4,
            ),
            list_page_size=2,
        )

    @pytest.fixture
    def bucket(self, mock_s3, provider):
        return S3Driver().new_bucket(
            provider, BucketConfig(name="assets", cloud_name="test-bucket")
        )

    @staticmethod
    def ctx():
        return Context.background()

    def test_matches_only_s3_providers(self, provider):
        """Test that the driver only accepts s3 providers."""
        driver = S3Driver()
        assert driver.matches(provider)
        assert not driver.matches(BucketProvider(memory=MemoryProviderConfig()))

    def test_download_pins_version(self, bucket, mock_s3):
        """Test downloading a pinned version."""
        mock_s3.get_object.return_value = {
            "Body": io.BytesIO(b"hello"),
            "ContentLength": 5,
            "ContentType": "text/plain",
            "ETag": '"etag-1"',
            "VersionId": "v1",
        }

        reader = bucket.download(
            DownloadData(ctx=self.ctx(), object=CloudObject("a.txt"), version="v1")
        )

        assert reader.read() == b"hello"
        assert reader.attrs.version == "v1"
        assert reader.attrs.content_type == "text/plain"
        assert reader.attrs.size == 5
        mock_s3.get_object.assert_called_once_with(
            Bucket="test-bucket", Key="a.txt", VersionId="v1"
        )

    def test_download_live_version_omits_version_id(self, bucket, mock_s3):
        """Test downloading the live version."""
        mock_s3.get_object.return_value = {"Body": io.BytesIO(b"x")}

        bucket.download(DownloadData(ctx=self.ctx(), object=CloudObject("a.txt")))

        mock_s3.get_object.assert_called_once_with(Bucket="test-bucket", Key="a.txt")

    def test_download_missing_object(self, bucket, mock_s3):
        """Test error mapping for a missing object on download."""
        native = client_error("NoSuchKey", status=404)
        mock_s3.get_object.side_effect = native

        with pytest.raises(ObjectNotExistError) as excinfo:
            bucket.download(DownloadData(ctx=self.ctx(), object=CloudObject("a.txt")))

        assert excinfo.value.__cause__ is native

    def test_download_cancelled_context(self, bucket, mock_s3):
        """Test downloading under a cancelled context."""
        ctx = Context()
        ctx.cancel()

        with pytest.raises(OperationCancelledError):
            bucket.download(DownloadData(ctx=ctx, object=CloudObject("a.txt")))

        mock_s3.get_object.assert_not_called()

    def test_download_reader_stops_after_cancel(self, bucket, mock_s3):
        """Test that an open reader stops once cancelled."""
        mock_s3.get_object.return_value = {"Body": io.BytesIO(b"abcdef")}
        ctx = Context()
        reader = bucket.download(DownloadData(ctx=ctx, object=CloudObject("a.txt")))

        assert reader.read(2) == b"ab"
        ctx.cancel()

        with pytest.raises(OperationCancelledError):
            reader.read(2)

    def test_small_upload_uses_put_object(self, bucket, mock_s3):
        """Test uploading a body below the part size."""
        mock_s3.put_object.return_value = {"ETag": '"etag-put"', "VersionId": "v7"}

        uploader = bucket.upload(
            UploadData(
                ctx=self.ctx(),
                object=CloudObject("a.txt"),
                attrs=UploadAttrs(content_type="text/plain"),
            )
        )
        uploader.write(b"abc")
        attrs = uploader.complete()

        mock_s3.put_object.assert_called_once_with(
            Bucket="test-bucket", Key="a.txt", ContentType="text/plain", Body=b"abc"
        )
        mock_s3.create_multipart_upload.assert_not_called()
        assert attrs.version == "v7"
        assert attrs.etag == '"etag-put"'
        assert attrs.size == 3
        assert attrs.content_type == "text/plain"

    def test_upload_default_content_type(self, bucket, mock_s3):
        """Test the content type sent when none is given."""
        mock_s3.put_object.return_value = {"ETag": '"e"'}

        uploader = bucket.upload(UploadData(ctx=self.ctx(), object=CloudObject("a")))
        attrs = uploader.complete()

        assert attrs.content_type == S3_DEFAULT_CONTENT_TYPE
        assert attrs.version == ""
        assert "ContentType" not in mock_s3.put_object.call_args[1]

    def test_not_exists_sends_if_none_match(self, bucket, mock_s3):
        """Test sending If-None-Match for not_exists."""
        mock_s3.put_object.return_value = {"ETag": '"e"'}

        uploader = bucket.upload(
            UploadData(
                ctx=self.ctx(),
                object=CloudObject("a.txt"),
                pre=Preconditions(not_exists=True),
            )
        )
        uploader.write(b"ab")
        uploader.complete()

        assert mock_s3.put_object.call_args[1]["IfNoneMatch"] == "*"

    def test_not_exists_conflict_maps_to_precondition_failed(self, bucket, mock_s3):
        """Test error mapping for a failed not_exists upload."""
        mock_s3.put_object.side_effect = client_error(
            "PreconditionFailed", "PutObject", 412
        )

        uploader = bucket.upload(
            UploadData(
                ctx=self.ctx(),
                object=CloudObject("a.txt"),
                pre=Preconditions(not_exists=True),
            )
        )
        uploader.write(b"ab")

        with pytest.raises(PreconditionFailedError):
            uploader.complete()

    def test_large_upload_uses_multipart(self, bucket, mock_s3):
        """Test uploading a body across several parts."""
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-1"}
        mock_s3.upload_part.side_effect = [
            {"ETag": "p1"},
            {"ETag": "p2"},
            {"ETag": "p3"},
        ]
        mock_s3.complete_multipart_upload.return_value = {
            "ETag": '"multi"',
            "VersionId": "v2",
        }

        uploader = bucket.upload(
            UploadData(
                ctx=self.ctx(),
                object=CloudObject("big.bin"),
                pre=Preconditions(not_exists=True),
            )
        )
        uploader.write(b"abcdefghij")

        assert mock_s3.upload_part.call_count == 2
        mock_s3.complete_multipart_upload.assert_not_called()

        attrs = uploader.complete()

        bodies = [c[1]["Body"] for c in mock_s3.upload_part.call_args_list]
        assert bodies == [b"abcd", b"efgh", b"ij"]
        mock_s3.create_multipart_upload.assert_called_once_with(
            Bucket="test-bucket", Key="big.bin"
        )
        mock_s3.complete_multipart_upload.assert_called_once_with(
            Bucket="test-bucket",
            Key="big.bin",
            UploadId="up-1",
            MultipartUpload={
                "Parts": [
                    {"ETag": "p1", "PartNumber": 1},
                    {"ETag": "p2", "PartNumber": 2},
                    {"ETag": "p3", "PartNumber": 3},
                ]
            },
            IfNoneMatch="*",
        )
        mock_s3.put_object.assert_not_called()
        assert attrs.size == 10
        assert attrs.version == "v2"

    def test_abort_discards_multipart_upload(self, bucket, mock_s3):
        """Test aborting an in-progress multipart upload."""
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-1"}
        mock_s3.upload_part.return_value = {"ETag": "p1"}

        uploader = bucket.upload(UploadData(ctx=self.ctx(), object=CloudObject("big")))
        uploader.write(b"abcdef")
        uploader.abort(RuntimeError("client went away"))
        uploader.abort()

        mock_s3.abort_multipart_upload.assert_called_once_with(
            Bucket="test-bucket", Key="big", UploadId="up-1"
        )
        mock_s3.complete_multipart_upload.assert_not_called()
        mock_s3.put_object.assert_not_called()

        with pytest.raises(OperationCancelledError):
            uploader.write(b"more")
        with pytest.raises(OperationCancelledError):
            uploader.complete()

    def test_abort_before_any_part_sends_nothing(self, bucket, mock_s3):
        """Test aborting before any part was sent."""
        uploader = bucket.upload(UploadData(ctx=self.ctx(), object=CloudObject("a")))
        uploader.write(b"ab")
        uploader.abort()

        mock_s3.put_object.assert_not_called()
        mock_s3.abort_multipart_upload.assert_not_called()

    def test_failed_completion_aborts_multipart_upload(self, bucket, mock_s3):
        """Test cleanup when completing a multipart upload fails."""
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-1"}
        mock_s3.upload_part.return_value = {"ETag": "p"}
        mock_s3.complete_multipart_upload.side_effect = client_error(
            "PreconditionFailed", "CompleteMultipartUpload", 412
        )

        uploader = bucket.upload(
            UploadData(
                ctx=self.ctx(),
                object=CloudObject("big"),
                pre=Preconditions(not_exists=True),
            )
        )
        uploader.write(b"abcdefgh")

        with pytest.raises(PreconditionFailedError):
            uploader.complete()

        mock_s3.abort_multipart_upload.assert_called_once()

    def test_missing_upload_id(self, bucket, mock_s3):
        """Test error when the response is missing UploadId."""
        mock_s3.create_multipart_upload.return_value = {}

        uploader = bucket.upload(UploadData(ctx=self.ctx(), object=CloudObject("big")))

        with pytest.raises(Exception, match="S3 response missing UploadId"):
            uploader.write(b"abcdef")

    def test_caller_cancel_stops_upload(self, bucket, mock_s3):
        """Test that cancelling the caller context stops an upload."""
        ctx = Context()
        uploader = bucket.upload(UploadData(ctx=ctx, object=CloudObject("a")))
        uploader.write(b"ab")
        ctx.cancel()

        with pytest.raises(OperationCancelledError):
            uploader.write(b"cd")
        mock_s3.put_object.assert_not_called()

    def test_abort_does_not_cancel_caller_context(self, bucket, mock_s3):
        """Test that aborting leaves the caller context usable."""
        ctx = Context()
        uploader = bucket.upload(UploadData(ctx=ctx, object=CloudObject("a")))

        uploader.abort()

        assert not ctx.cancelled

    def test_context_manager_aborts_on_error(self, bucket, mock_s3):
        """Test that a failing with-block aborts the upload."""
        mock_s3.create_multipart_upload.return_value = {"UploadId": "up-1"}
        mock_s3.upload_part.return_value = {"ETag": "p"}

        with pytest.raises(ValueError):
            with bucket.upload(UploadData(ctx=self.ctx(), object=CloudObject("a"))) as w:
                w.write(b"abcdef")
                raise ValueError("boom")

        mock_s3.abort_multipart_upload.assert_called_once()
        mock_s3.complete_multipart_upload.assert_not_called()

    def test_list_stops_requesting_pages_at_limit(self, bucket, mock_s3):
        """Test that listing stops paging at the limit."""
        mock_s3.list_objects_v2.side_effect = [
            {
                "Contents": [
                    {"Key": "docs/1", "Size": 1, "ETag": '"1"'},
                    {"Key": "docs/2", "Size": 2, "ETag": '"2"'},
                ],
                "IsTruncated": True,
                "NextContinuationToken": "t1",
            },
            {
                "Contents": [{"Key": "docs/3", "Size": 3, "ETag": '"3"'}],
                "IsTruncated": True,
                "NextContinuationToken": "t2",
            },
        ]

        entries = list(
            bucket.list(ListData(ctx=self.ctx(), prefix="docs/", limit=3))
        )

        assert [e.object for e in entries] == ["docs/1", "docs/2", "docs/3"]
        assert entries[2].size == 3
        assert mock_s3.list_objects_v2.call_count == 2
        first, second = mock_s3.list_objects_v2.call_args_list
        assert first[1] == {"Bucket": "test-bucket", "MaxKeys": 2, "Prefix": "docs/"}
        assert second[1] == {
            "Bucket": "test-bucket",
            "MaxKeys": 1,
            "Prefix": "docs/",
            "ContinuationToken": "t1",
        }

    def test_list_ends_when_not_truncated(self, bucket, mock_s3):
        """Test that listing ends on an untruncated page."""
        mock_s3.list_objects_v2.return_value = {
            "Contents": [{"Key": "a", "Size": 1, "ETag": '"a"'}],
            "IsTruncated": False,
        }

        entries = list(bucket.list(ListData(ctx=self.ctx(), limit=10)))

        assert len(entries) == 1
        assert mock_s3.list_objects_v2.call_count == 1
        assert "Prefix" not in mock_s3.list_objects_v2.call_args[1]

    def test_list_zero_limit_issues_no_request(self, bucket, mock_s3):
        """Test that a zero limit sends no request."""
        assert list(bucket.list(ListData(ctx=self.ctx(), limit=0))) == []
        mock_s3.list_objects_v2.assert_not_called()

    def test_list_error_is_terminal_and_passes_through(self, bucket, mock_s3):
        """Test that a list error is raised once and ends the cursor."""
        denied = client_error("AccessDenied", "ListObjectsV2", 403)
        mock_s3.list_objects_v2.side_effect = [
            {
                "Contents": [{"Key": "a", "Size": 1, "ETag": '"a"'}],
                "IsTruncated": True,
                "NextContinuationToken": "t1",
            },
            denied,
        ]
        cursor = bucket.list(ListData(ctx=self.ctx()))

        assert next(cursor).object == "a"
        with pytest.raises(ClientError) as excinfo:
            next(cursor)
        assert excinfo.value is denied
        with pytest.raises(StopIteration):
            next(cursor)

    def test_list_abandoned_cursor_fetches_nothing_more(self, bucket, mock_s3):
        """Test that a closed cursor sends no more requests."""
        mock_s3.list_objects_v2.return_value = {
            "Contents": [
                {"Key": "a", "Size": 1, "ETag": '"a"'},
                {"Key": "b", "Size": 1, "ETag": '"b"'},
            ],
            "IsTruncated": True,
            "NextContinuationToken": "t1",
        }
        cursor = bucket.list(ListData(ctx=self.ctx()))

        for entry in cursor:
            break
        cursor.close()

        assert mock_s3.list_objects_v2.call_count == 1
        assert list(cursor) == []

    def test_remove_checks_existence_then_deletes(self, bucket, mock_s3):
        """Test removing an object."""
        bucket.remove(RemoveData(ctx=self.ctx(), object=CloudObject("a"), version="v1"))

        mock_s3.head_object.assert_called_once_with(
            Bucket="test-bucket", Key="a", VersionId="v1"
        )
        mock_s3.delete_object.assert_called_once_with(
            Bucket="test-bucket", Key="a", VersionId="v1"
        )

    def test_remove_missing_object(self, bucket, mock_s3):
        """Test removing an object that does not exist."""
        mock_s3.head_object.side_effect = client_error("404", "HeadObject", 404)

        with pytest.raises(ObjectNotExistError):
            bucket.remove(RemoveData(ctx=self.ctx(), object=CloudObject("a")))

        mock_s3.delete_object.assert_not_called()

    def test_attrs(self, bucket, mock_s3):
        """Test getting object metadata."""
        mock_s3.head_object.return_value = {
            "ContentLength": 1024,
            "ETag": '"test-etag"',
            "ContentType": "application/pdf",
            "VersionId": "v3",
        }

        result = bucket.attrs(AttrsData(ctx=self.ctx(), object=CloudObject("doc.pdf")))

        assert result.object == "doc.pdf"
        assert result.size == 1024
        assert result.etag == '"test-etag"'
        assert result.content_type == "application/pdf"
        assert result.version == "v3"
        mock_s3.head_object.assert_called_once_with(Bucket="test-bucket", Key="doc.pdf")

    def test_attrs_missing_size(self, bucket, mock_s3):
        """Test getting object metadata when ContentLength is missing."""
        mock_s3.head_object.return_value = {"ETag": '"test-etag"'}

        result = bucket.attrs(AttrsData(ctx=self.ctx(), object=CloudObject("a")))

        assert result.size == 0

    def test_unknown_errors_pass_through_unmodified(self, bucket, mock_s3):
        """Test that unmapped client errors are raised unchanged."""
        denied = client_error("AccessDenied", "HeadObject", 403)
        mock_s3.head_object.side_effect = denied

        with pytest.raises(ClientError) as excinfo:
            bucket.attrs(AttrsData(ctx=self.ctx(), object=CloudObject("a")))

        assert excinfo.value is denied


class TestMapError:
    @pytest.mark.parametrize("code", ["NoSuchKey", "NoSuchVersion", "NotFound", "404"])
    def test_not_found_codes(self, code):
        """Test the error codes mapped to a missing object."""
        assert isinstance(map_error(client_error(code)), ObjectNotExistError)

    @pytest.mark.parametrize(
        "code", ["PreconditionFailed", "412", "ConditionalRequestConflict"]
    )
    def test_precondition_codes(self, code):
        """Test the error codes mapped to a failed precondition."""
        assert isinstance(map_error(client_error(code)), PreconditionFailedError)

    @pytest.mark.parametrize("code", ["AccessDenied", "NoSuchBucket", "SlowDown"])
    def test_other_codes_are_not_mapped(self, code):
        """Test that other error codes stay unmapped."""
        assert map_error(client_error(code)) is None


class TestS3ClientConstruction:
    def test_builds_client_from_provider_config(self):
        """Test building the boto3 client from provider settings."""
        cfg = S3ProviderConfig(
            endpoint_url="http://localhost:9000",
            region="us-east-1",
            access_key_id="key",
            secret_access_key="secret",
            use_ssl=False,
            addressing_style="path",
        )
        with patch("objstore.infra.storage.providers.s3.boto3.client") as factory:
            S3Driver._build_s3_client(cfg)

        args, kwargs = factory.call_args
        assert args == ("s3",)
        assert kwargs["endpoint_url"] == "http://localhost:9000"
        assert kwargs["region_name"] == "us-east-1"
        assert kwargs["aws_access_key_id"] == "key"
        assert kwargs["use_ssl"] is False
        assert kwargs["config"].s3 == {"addressing_style": "path"}

    def test_anonymous_access_disables_signing(self):
        """Test that anonymous access uses unsigned requests."""
        with patch("objstore.infra.storage.providers.s3.boto3.client") as factory:
            S3Driver._build_s3_client(S3ProviderConfig(anonymous=True))

        assert factory.call_args[1]["config"].signature_version is UNSIGNED

    def test_construction_failure_is_fatal(self):
        """Test error when the boto3 client cannot be built."""
        provider = BucketProvider(s3=S3ProviderConfig())
        with patch.object(
            S3Driver, "_build_s3_client", side_effect=ValueError("bad endpoint")
        ):
            with pytest.raises(ClientConstructionError, match="bad endpoint"):
                S3Driver().new_bucket(provider, BucketConfig(name="a", cloud_name="a"))

    def test_client_shared_per_provider(self):
        """Test sharing one boto3 client per provider."""
        provider = BucketProvider(s3=S3ProviderConfig())
        driver = S3Driver()
        with patch.object(S3Driver, "_build_s3_client", return_value=MagicMock()) as build:
            driver.new_bucket(provider, BucketConfig(name="a", cloud_name="a"))
            driver.new_bucket(provider, BucketConfig(name="b", cloud_name="b"))
            driver.new_bucket(
                BucketProvider(s3=S3ProviderConfig()),
                BucketConfig(name="c", cloud_name="c"),
            )

        assert build.call_count == 2
        assert driver.client_count == 2
