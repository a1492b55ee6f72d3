#!/usr/bin/env python3
"""
CLI Script: Run Pipeline
========================

Command-line tool for producing a comic from a theme, start to finish.

Usage:
    python scripts/run_pipeline.py --theme "a lighthouse keeper who talks to storms"
    python scripts/run_pipeline.py -t "desert caravans" -f LONG_SERIES --tier premium --save
    python scripts/run_pipeline.py --resume proj_3f2a9c1b7d4e --until visuals
    python scripts/run_pipeline.py --resume proj_3f2a9c1b7d4e --next-chapter --save
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comic_studio import ComicProject, ProductionPipeline, StoryFormat, ModelTier, WorkflowStage
from comic_studio.context import SQLitePersistenceStore
from comic_studio.core.config import Config
from comic_studio.core.exceptions import StudioError
from comic_studio.utils import save_data_url

STEPS = ["research", "script", "visuals", "final"]


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Produce an AI-generated comic",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -t "a lighthouse keeper who talks to storms"
  %(prog)s -t "desert caravans" -f LONG_SERIES --panels 12
  %(prog)s --resume proj_3f2a9c1b7d4e --until final
        """,
    )

    # Project
    parser.add_argument(
        "-t", "--theme",
        help="Story theme for a new project",
    )
    parser.add_argument(
        "-f", "--format",
        default="SHORT_STORY",
        choices=[f.value for f in StoryFormat],
        help="Story format (default: SHORT_STORY)",
    )
    parser.add_argument(
        "--language",
        default="English",
        help="Output language (default: English)",
    )
    parser.add_argument(
        "--tier",
        default="standard",
        choices=["standard", "premium"],
        help="Text model tier (default: standard)",
    )
    parser.add_argument(
        "--panels",
        type=int,
        help="Panels per chapter (default: from config)",
    )
    parser.add_argument(
        "--resume",
        metavar="PROJECT_ID",
        help="Continue a saved project instead of starting a new one",
    )

    # Run control
    parser.add_argument(
        "--until",
        default="final",
        choices=STEPS,
        help="Last step to run (default: final)",
    )
    parser.add_argument(
        "--next-chapter",
        action="store_true",
        help="When resuming a completed series, archive the chapter and continue with the next",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Save the project to an active slot when done",
    )

    # Output
    parser.add_argument(
        "-o", "--output",
        help="Directory for the backup archive and panel images (default: storage.export_path)",
    )
    parser.add_argument(
        "--config",
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging",
    )

    return parser.parse_args()


def export_panels(project: ComicProject, output_dir: Path) -> int:
    """Write inline panel images next to the backup archive."""
    written = 0
    for index, panel in enumerate(project.panels, start=1):
        if panel.image_url and panel.image_url.startswith("data:"):
            save_data_url(panel.image_url, output_dir / f"panel_{index:02d}.png")
            written += 1
    return written


async def run(args, pipeline: ProductionPipeline) -> None:
    stop = STEPS.index(args.until)
    stage = pipeline.project.workflow_stage

    if stage == WorkflowStage.COMPLETED and args.next_chapter:
        finished = pipeline.project.current_chapter
        print(f"\nArchiving chapter {finished} and writing chapter {finished + 1}...")
        await pipeline.complete_chapter_and_next()
        stage = pipeline.project.workflow_stage

    if stage == WorkflowStage.IDLE:
        await pipeline.start_research()
        stage = pipeline.project.workflow_stage
    if stage == WorkflowStage.RESEARCHING:
        print("\nResearching...")
        await pipeline.finalize_strategy()
        analysis = pipeline.project.market_analysis
        print(f"  Title: {analysis.suggested_title}")
        print(f"  Audience: {analysis.target_audience}")
        print(f"  Style: {analysis.visual_style}")
        if stop < STEPS.index("script"):
            return

        print("\nWriting script...")
        await pipeline.approve_research_and_script()
        stage = pipeline.project.workflow_stage

    if stage == WorkflowStage.CENSORING_SCRIPT:
        project = pipeline.project
        print(f"  {len(project.panels)} panels, {len(project.characters)} characters")
        if project.is_censored:
            print(f"  Held by censor: {project.censor_report or 'check failed'}")
            return
        if stop < STEPS.index("visuals"):
            return

        print("\nDesigning characters and drawing panels...")
        await pipeline.approve_script_and_visualize()
        stage = pipeline.project.workflow_stage

    if stage == WorkflowStage.POST_PRODUCTION and stop >= STEPS.index("final"):
        print("\nVoicing and animating...")
        await pipeline.finalize_production()


async def main():
    """Main CLI entry point."""
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.theme and not args.resume:
        print("Error: Either --theme or --resume is required")
        sys.exit(1)

    if not os.getenv("GEMINI_API_KEY") and not os.getenv("GOOGLE_API_KEY"):
        print("Error: GEMINI_API_KEY environment variable not set")
        print("Get your key at: https://aistudio.google.com/apikey")
        sys.exit(1)

    config = Config.load(args.config)
    persistence = SQLitePersistenceStore.from_config(config)
    output_dir = Path(args.output or config.storage.export_path)

    project = ComicProject.new(
        theme=args.theme or "",
        story_format=StoryFormat(args.format),
        language=args.language,
        model_tier=ModelTier(args.tier.upper()),
        target_panel_count=args.panels,
    )

    print("=" * 50)
    print("Comic Studio")
    print("=" * 50)

    try:
        async with ProductionPipeline(project, config=config, persistence=persistence) as pipeline:
            if args.resume:
                project = await pipeline.load_project(args.resume)
                print(f"\nResumed: {project.title or project.id} ({project.workflow_stage.value})")
            else:
                print(f"\nTheme: {args.theme}")
                print(f"Format: {args.format}")

            await run(args, pipeline)

            project = pipeline.project
            print("\n" + "-" * 50)
            print(f"Stage: {project.workflow_stage.value}")
            print(f"Title: {project.title or '(untitled)'}")

            archive = pipeline.export_zip(output_dir)
            print(f"Backup: {archive}")
            images = export_panels(project, output_dir / project.id)
            if images:
                print(f"Panel images: {images} in {output_dir / project.id}")

            if args.save:
                result = await pipeline.save_work_in_progress()
                print(f"Saved: {result.status.value}" + (f" ({result.message})" if result.message else ""))

            print("=" * 50)

    except KeyboardInterrupt:
        print("\nCancelled")
        sys.exit(130)
    except StudioError as e:
        print(f"\nError: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
