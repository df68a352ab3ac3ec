"""Example usage of the lilt TTS pipeline."""

import asyncio
import logging

from lilt.config import Settings
from lilt.service import GenerationRequest, SpeechService


async def main():
    """Example long-form synthesis with the default assets directory."""
    service = SpeechService(Settings(voice="F1"))
    try:
        # Load models from assets/onnx and the F1 voice style
        await service.load()

        request = GenerationRequest(
            text="Hello, world! This is lilt.\n\nLong text is split into chunks joined by short silences.",
            total_step=5,
            seed=0,
        )
        result = await service.generate(request)
        print(f"Generated {result.duration:.2f}s of audio ({result.wav.shape[0]} samples)")

        await service.save(result, "example.wav")
    finally:
        service.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    asyncio.run(main())
