from __future__ import annotations

from config.settings import load_settings
from storage.s3 import S3Uploader


class _FakeS3Client:
    def __init__(self):
        self.uploads = []
        self.presigned = []

    def upload_file(self, path, bucket, key, ExtraArgs=None):
        self.uploads.append((path, bucket, key, ExtraArgs))

    def generate_presigned_url(self, operation, Params=None, ExpiresIn=None):
        self.presigned.append((operation, Params, ExpiresIn))
        return f"https://{Params['Bucket']}.s3.example/{Params['Key']}?expires={ExpiresIn}"


def test_upload_is_private_and_returns_presigned_get(tmp_path) -> None:
    path = tmp_path / "Band - Song.mp3"
    path.write_bytes(b"ID3")
    client = _FakeS3Client()
    uploader = S3Uploader("tracks", region="eu-north-1", expires=120, client=client)

    url = uploader.upload(str(path), "job-1/Band - Song.mp3")

    assert url == "https://tracks.s3.example/job-1/Band - Song.mp3?expires=120"
    _, bucket, key, extra = client.uploads[0]
    assert (bucket, key) == ("tracks", "job-1/Band - Song.mp3")
    assert extra == {"ACL": "private", "ContentType": "audio/mpeg"}
    assert client.presigned[0][0] == "get_object"


def test_upload_defaults_key_to_file_name(tmp_path) -> None:
    path = tmp_path / "a.mp3"
    path.write_bytes(b"ID3")
    client = _FakeS3Client()

    S3Uploader("tracks", region="eu-north-1", client=client).upload(str(path))

    assert client.uploads[0][2] == "a.mp3"
    assert client.presigned[0][2] == 300


def test_from_settings_is_disabled_without_bucket() -> None:
    assert S3Uploader.from_settings(load_settings({})) is None

    uploader = S3Uploader.from_settings(load_settings({"AUDIOGRAB_S3_BUCKET": "tracks"}))
    assert uploader.bucket == "tracks"
    assert uploader.region == "eu-north-1"
