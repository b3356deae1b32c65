from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from bg_blur.errors import PipelineError
from bg_blur.pipeline import blur_background, resolve_blur_radius
from bg_blur.providers import load_provider

# Direct-return callers default to 10; the persisting upload flow uses 20.
DEFAULT_BLUR_RADIUS = 10


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def _blur_all(images, input_dir: Path, output_dir: Path, radius: int, provider, args, manifest_fp=None) -> int:
    """Run the pipeline over `images`; returns the number of failures."""
    failed = 0
    for img_path in tqdm(images, desc="Blurring", unit="img"):
        rel = img_path.relative_to(input_dir)
        out_path = (output_dir / rel).with_suffix(".png")
        record = {"source_image": str(img_path), "blur_radius": radius}
        try:
            result = blur_background(img_path.read_bytes(), radius, provider, scratch_dir=args.scratch_dir)
        except PipelineError as e:
            failed += 1
            print(f"{img_path.name}: FAILED at {e.stage}: {e}")
            record.update({"status": "failed", "stage": e.stage, "error": str(e)})
        else:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(result.image)
            t = result.timings
            print(
                f"{img_path.name}: total={t['total_s']:.3f}s "
                f"(seg={t['segment_s']:.3f}s via {result.segmentation_path} "
                f"blur={t['blur_s']:.3f}s comp={t['composite_s']:.3f}s)"
            )
            record.update({"status": "ok", "output": str(out_path), **result.summary()})
            if args.data_url:
                record["image"] = result.to_data_url()

        if manifest_fp is not None:
            manifest_fp.write(json.dumps(record, ensure_ascii=False) + "\n")
            manifest_fp.flush()
    return failed


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Blur photo backgrounds while keeping the subject sharp.")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for RGBA PNGs.")
    parser.add_argument("--blur-radius", default=None, help=f"Gaussian sigma in pixels (default: {DEFAULT_BLUR_RADIUS}).")
    parser.add_argument(
        "--segmenter",
        default=None,
        type=str,
        help="'birefnet' (default), 'hf:<repo>', a TorchScript path, 'rembg' or 'rembg:<model>'. Env: BG_BLUR_SEGMENTER.",
    )
    parser.add_argument("--scratch-dir", default=None, type=str, help="Where the file-mode fallback writes temp PNGs.")
    parser.add_argument("--manifest", default=None, type=str, help="Append one JSON line per image to this file.")
    parser.add_argument("--data-url", action="store_true", help="Include the data: URL of each result in the manifest.")
    parser.add_argument("--log-level", default="WARNING", type=str)
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    radius = resolve_blur_radius(args.blur_radius, DEFAULT_BLUR_RADIUS)
    provider = load_provider(args.segmenter)

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    total0 = time.perf_counter()
    if args.manifest:
        manifest_path = Path(args.manifest)
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        with open(manifest_path, "a", encoding="utf-8") as manifest_fp:
            failed = _blur_all(images, input_dir, output_dir, radius, provider, args, manifest_fp)
    else:
        failed = _blur_all(images, input_dir, output_dir, radius, provider, args)

    total1 = time.perf_counter()
    print(f"Done. {len(images)} images ({failed} failed) in {total1-total0:.2f}s")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
