import asyncio

from chatbridge.logging_config import get_logger

logger = get_logger("audio_service")


class AudioConversionError(Exception):
    pass


class AudioConverter:
    """Re-encode voice notes into the mono 16 kHz mp3 the transcription API handles best."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout_seconds: float = 60.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout_seconds = timeout_seconds

    def _command(self, input_format: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-f", input_format,
            "-i", "pipe:0",
            "-ac", "1",
            "-ar", "16000",
            "-b:a", "64k",
            "-f", "mp3",
            "pipe:1",
        ]

    async def to_speech_mp3(self, data: bytes, input_format: str = "ogg") -> bytes:
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(input_format),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AudioConversionError(f"Cannot start ffmpeg: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise AudioConversionError(f"ffmpeg timed out after {self.timeout_seconds:g}s") from e

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[:500]
            logger.error("ffmpeg conversion failed", extra={"context": {"returncode": process.returncode, "stderr": message}})
            raise AudioConversionError(f"ffmpeg exited with {process.returncode}: {message}")

        logger.debug(f"Converted audio {len(data)} -> {len(stdout)} bytes")
        return stdout
