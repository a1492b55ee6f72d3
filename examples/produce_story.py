#!/usr/bin/env python3
"""
Story Production Example
========================

Walk a short story through every stage, locking the lead character
before the panels are drawn.
"""

import asyncio
import os
from pathlib import Path

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from comic_studio import ComicProject, ProductionPipeline, StoryFormat, StudioError
from comic_studio.context import SQLitePersistenceStore
from comic_studio.core.config import Config
from comic_studio.utils import save_data_url


async def main():
    """Produce a short comic with a locked protagonist."""

    # Check for API key
    if not os.getenv("GEMINI_API_KEY"):
        print("Please set GEMINI_API_KEY environment variable")
        return

    project_root = Path(__file__).parent.parent
    config = Config.load(project_root / "config" / "studio.yaml")
    output_path = project_root / "output"

    project = ComicProject.new(
        theme="a lighthouse keeper who bargains with the storms",
        story_format=StoryFormat.SHORT_STORY,
        target_panel_count=6,
    )

    print("=== Comic Production ===")
    print(f"Theme: {project.theme}")

    try:
        async with ProductionPipeline(
            project,
            config=config,
            persistence=SQLitePersistenceStore.from_config(config),
        ) as pipeline:
            # Research, with one round of feedback
            await pipeline.start_research()
            reply = await pipeline.send_research_message("Keep it quiet and melancholy, more sea than monsters.")
            print(f"\nResearcher: {reply}")
            await pipeline.finalize_strategy()
            print(f"Title: {pipeline.project.market_analysis.suggested_title}")

            # Concept, cast, script, and content review
            await pipeline.approve_research_and_script()
            project = pipeline.project
            if project.is_censored:
                print(f"\nScript held by review: {project.censor_report}")
                is_censored, _ = await pipeline.run_censor_check()
                if is_censored:
                    return

            print(f"\nCast ({len(project.characters)}):")
            for character in project.characters:
                role = character.role.value if character.role else "SUPPORTING"
                print(f"  {character.name} [{role}]")
            print(f"Panels: {len(project.panels)}")

            # Lock the lead so its design survives later regeneration
            lead = project.characters[0]
            await pipeline.regenerate_character(lead.id)
            pipeline.toggle_character_lock(lead.id)

            # Character sheets and panel art
            await pipeline.approve_script_and_visualize()
            for character in pipeline.project.characters:
                status = character.consistency_status.value if character.consistency_status else "unchecked"
                print(f"  {character.name}: {status}")

            # Voices and animation
            await pipeline.finalize_production()
            project = pipeline.project

            print("\n" + "-" * 50)
            print(f"Stage: {project.workflow_stage.value}")
            for i, panel in enumerate(project.panels, start=1):
                if panel.image_url and panel.image_url.startswith("data:"):
                    save_data_url(panel.image_url, output_path / project.id / f"panel_{i:02d}.png")
                if panel.video_url:
                    print(f"  Panel {i} video: {panel.video_url}")

            result = await pipeline.save_work_in_progress()
            print(f"Saved: {result.status.value}")
            print(f"Backup: {pipeline.export_zip(output_path)}")

            print("\nRecent log:")
            for entry in project.logs[-5:]:
                print(f"  [{entry.agent_id.value}] {entry.message}")

    except StudioError as e:
        print(f"Error: {e.message}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
