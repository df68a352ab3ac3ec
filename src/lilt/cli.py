"""Synthesize a WAV file from text: Chunk -> Duration -> Denoise -> Vocoder."""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from lilt.config import VOICES, Settings
from lilt.errors import LiltError
from lilt.service import GenerationRequest, SpeechService

logger = logging.getLogger(__name__)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Synthesize speech from text to a WAV file")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--text", type=str, default="Hello, this is a text to speech example.")
    source.add_argument("--text_file", type=str, default=None, help="Read the input text from a file")
    parser.add_argument("--output_wav", type=str, default="outputs/speech.wav")
    parser.add_argument("--assets_dir", type=str, default=settings.assets_dir)
    parser.add_argument("--model_dir", type=str, default=settings.model_dir,
                        help="Directory with tts.json, unicode_indexer.json and stage models (default: <assets_dir>/onnx)")
    parser.add_argument("--voice", type=str, choices=VOICES, default=settings.voice)
    parser.add_argument("--total_step", type=int, default=settings.total_step, help="Denoising steps per chunk")
    parser.add_argument("--speed", type=float, default=settings.speed)
    parser.add_argument("--silence_duration", type=float, default=settings.silence_duration)
    parser.add_argument("--max_chunk_len", type=int, default=settings.max_chunk_len)
    parser.add_argument("--seed", type=int, default=settings.seed)
    parser.add_argument("--use_gpu", action="store_true", default=settings.use_gpu)
    parser.add_argument("--verbose", action="store_true", help="Log per-chunk details")
    return parser


async def synthesize(args: argparse.Namespace) -> float:
    settings = Settings(
        assets_dir=args.assets_dir,
        model_dir=args.model_dir,
        voice=args.voice,
        total_step=args.total_step,
        speed=args.speed,
        silence_duration=args.silence_duration,
        max_chunk_len=args.max_chunk_len,
        use_gpu=args.use_gpu,
        seed=args.seed,
    )
    text = Path(args.text_file).read_text(encoding="utf-8") if args.text_file else args.text

    service = SpeechService(settings)
    try:
        await service.load()

        request = GenerationRequest(
            text=text,
            total_step=settings.total_step,
            speed=settings.speed,
            voice=settings.voice,
            silence_duration=settings.silence_duration,
            seed=settings.seed,
        )
        with tqdm(desc="chunks", unit="chunk") as pbar:
            def on_chunk(index: int, total: int) -> None:
                pbar.total = total
                pbar.update(1)

            t0 = time.time()
            result = await service.generate(request, progress=on_chunk)
            elapsed = time.time() - t0

        rtf = elapsed / result.duration if result.duration > 0 else float("nan")
        logger.info(f"Generated {result.duration:.2f}s in {elapsed:.2f}s (RTF: {rtf:.3f})")

        out_path = Path(args.output_wav)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        await service.save(result, out_path)
        return result.duration
    finally:
        service.close()


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = Settings()
    except ValueError as e:
        print(f"Invalid environment settings: {e}", file=sys.stderr)
        return 2

    args = build_parser(settings).parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(synthesize(args))
    except (LiltError, ValueError, OSError) as e:
        logger.error(f"Synthesis failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
