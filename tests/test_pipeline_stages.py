"""Tests for pipeline/stages.py.

Stages run against the stub tools from conftest on a fake terminal.
"""

import io

import pytest
from rich.console import Console

from docker_ssh_build.cancel import CancellationContext
from docker_ssh_build.pipeline.stages import (
    StageContext,
    StageError,
    create_context_bundle,
    import_image,
    transfer_image,
)

IMAGE_BYTES = b"IMAGE-ARCHIVE"


@pytest.fixture
def echo_buffer() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stage_ctx(build_config, pty_terminal, echo_buffer):
    """StageContext wired to the fake terminal and a capturing console."""
    with CancellationContext() as cancellation:
        yield StageContext(
            config=build_config,
            terminal=pty_terminal.terminal,
            cancellation=cancellation,
            console=Console(file=echo_buffer, width=400, color_system=None),
        )


@pytest.fixture
def scratch_dir(tmp_path):
    """Empty working directory standing in for the scratch directory."""
    path = tmp_path / "work"
    path.mkdir()
    return path


class TestStageContext:
    """Test StageContext helpers."""

    def test_echo_prefixes_command(self, stage_ctx, echo_buffer):
        """Commands are echoed verbatim behind a '$ ' prompt, markup untouched."""
        stage_ctx.echo("docker load -i [image].tar")
        assert echo_buffer.getvalue() == "$ docker load -i [image].tar\n"


class TestCreateContextBundle:
    """Test create_context_bundle stage."""

    def test_creates_bundle(self, stage_ctx, scratch_dir, echo_buffer, fake_tools):
        """The archiver writes ctx.tar.gz and is echoed first."""
        bundle = create_context_bundle(stage_ctx, scratch_dir)

        assert bundle == scratch_dir / "ctx.tar.gz"
        assert bundle.read_bytes() == b"fake-build-context"
        assert fake_tools.called_tools() == ["tar"]
        assert echo_buffer.getvalue().startswith(f"$ {fake_tools.tar} -czf ")

    def test_archiver_failure(self, stage_ctx, scratch_dir, monkeypatch):
        """A non-zero archiver exit raises with the command for re-runs."""
        monkeypatch.setenv("FAKE_TAR_MODE", "fail")

        with pytest.raises(StageError) as exc_info:
            create_context_bundle(stage_ctx, scratch_dir)

        assert exc_info.value.stage == "archive"
        assert exc_info.value.exit_code == 2
        assert "-czf" in exc_info.value.command

    def test_missing_bundle(self, stage_ctx, scratch_dir, monkeypatch):
        """A successful archiver that wrote nothing is still a failure."""
        monkeypatch.setenv("FAKE_TAR_MODE", "empty")

        with pytest.raises(StageError) as exc_info:
            create_context_bundle(stage_ctx, scratch_dir)

        assert exc_info.value.code == "bundle_missing"


class TestTransferImage:
    """Test transfer_image stage."""

    def test_writes_image_file(self, stage_ctx, scratch_dir, echo_buffer, fake_tools):
        """Remote save output lands in image.tar."""
        image_path = transfer_image(stage_ctx, scratch_dir)

        assert image_path == scratch_dir / "image.tar"
        assert image_path.read_bytes() == IMAGE_BYTES
        assert fake_tools.calls() == [["ssh", "build01", "docker", "save", "myapp:test"]]
        assert echo_buffer.getvalue().rstrip().endswith(f"> {image_path}")

    def test_remote_failure(self, stage_ctx, scratch_dir, monkeypatch):
        """A failed remote save raises with its exit code."""
        monkeypatch.setenv("FAKE_SAVE_MODE", "fail")

        with pytest.raises(StageError) as exc_info:
            transfer_image(stage_ctx, scratch_dir)

        assert exc_info.value.stage == "transfer"
        assert exc_info.value.exit_code == 1

    def test_killed_mid_stream(self, stage_ctx, scratch_dir, monkeypatch):
        """A killed transfer fails even though some bytes were written."""
        monkeypatch.setenv("FAKE_SAVE_MODE", "killed")

        with pytest.raises(StageError) as exc_info:
            transfer_image(stage_ctx, scratch_dir)

        assert exc_info.value.exit_code == -9

    def test_missing_ssh(self, build_config, stage_ctx, scratch_dir, tmp_path):
        """An ssh that cannot be started is an execution error."""
        settings = build_config.settings.model_copy(
            update={"ssh_command": str(tmp_path / "no-ssh")}
        )
        stage_ctx.config = build_config.model_copy(update={"settings": settings})

        with pytest.raises(StageError) as exc_info:
            transfer_image(stage_ctx, scratch_dir)

        assert exc_info.value.code == "execution_error"


class TestImportImage:
    """Test import_image stage."""

    def test_loads_image(self, stage_ctx, scratch_dir, fake_tools, pty_terminal):
        """The engine loads the archive with its output relayed."""
        image_path = scratch_dir / "image.tar"
        image_path.write_bytes(IMAGE_BYTES)

        import_image(stage_ctx, image_path)

        assert fake_tools.calls() == [["docker", "load", "-i", str(image_path)]]
        assert b"Loaded image" in pty_terminal.output()

    def test_load_failure(self, stage_ctx, scratch_dir, monkeypatch):
        """A failed load raises for the import stage."""
        image_path = scratch_dir / "image.tar"
        image_path.write_bytes(IMAGE_BYTES)
        monkeypatch.setenv("FAKE_LOAD_MODE", "fail")

        with pytest.raises(StageError) as exc_info:
            import_image(stage_ctx, image_path)

        assert exc_info.value.stage == "import"
