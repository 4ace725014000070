"""Prompt builders for the agent.

One builder per operation:
    - build_story_prompt: implement one story (execution loop)
    - build_refine_prompt: review unfinished stories
    - build_generate_prompt: propose new stories from a request
    - build_story_edit_prompt: rewrite one story and its related stories
    - build_align_prompt: check stories against a product vision

The PRD builders ask for a single JSON object; AgentRunner.run_json parses it.
"""

from __future__ import annotations

import json
from typing import Any

from ralph_dashboard.core.models import PRD, Story

COMPLETE_MARKER = "<promise>COMPLETE</promise>"

# Stories listed as context in the generate prompt
GENERATE_SAMPLE_SIZE = 10


def _story_section(story: Story) -> str:
    lines = [f"## Story: {story.number}", f"**Title:** {story.title}", ""]
    if story.intent:
        lines += [f"**Intent:** {story.intent}", ""]
    if story.description:
        lines += ["**Description:**", story.description, ""]
    lines.append("**Acceptance Criteria:**")
    lines += [f"- {ac}" for ac in story.acceptance] or ["- (none)"]
    return "\n".join(lines)


def _story_json(stories: list[Story]) -> str:
    return json.dumps(
        [
            {
                "id": s.id,
                "title": s.title,
                "intent": s.intent,
                "description": s.description,
                "acceptance": s.acceptance,
                "phase": s.phase,
                "epic": s.epic,
                "tags": s.tags,
                "depends_on": s.depends_on,
            }
            for s in stories
        ],
        indent=2,
    )


def build_story_prompt(
    story: Story,
    branch: str,
    base_branch: str,
    attempt: int,
    signal_url: str,
    clarification: str | None = None,
    previous_failure: str | None = None,
) -> str:
    """Prompt for implementing one story.

    The agent reports back through the signal endpoint; printing the
    completion marker is accepted as a fallback.
    """
    parts = [
        "You are implementing one story of this project's backlog.",
        "",
        _story_section(story),
        "",
        "## Workflow",
        f"- Work on branch `{branch}` (create it from `{base_branch}` if it does not exist).",
        "- Implement the story so every acceptance criterion holds; run the tests.",
        "- Commit your work and open a pull request against "
        f"`{base_branch}`.",
        f"- This is attempt {attempt}.",
        "",
        "## Reporting",
        "When the story is done, signal completion (include the PR URL):",
        "```",
        f"curl -s -X POST {signal_url} -H 'Content-Type: application/json' \\",
        f"  -d '{{\"storyId\": \"{story.id}\", \"action\": \"complete\", "
        "\"message\": \"<summary>\", \"prUrl\": \"<pr url>\"}'",
        "```",
        "If you cannot continue, signal blocked with the reason:",
        "```",
        f"curl -s -X POST {signal_url} -H 'Content-Type: application/json' \\",
        f"  -d '{{\"storyId\": \"{story.id}\", \"action\": \"blocked\", "
        "\"message\": \"<reason>\"}'",
        "```",
        f"If you cannot reach the endpoint, print {COMPLETE_MARKER} as the last line when done.",
    ]
    if clarification:
        parts += ["", "## Clarification from User", clarification]
    if previous_failure:
        parts += [
            "",
            "## Previous Failure Context",
            f"The previous attempt failed with: {previous_failure}",
            "Address this issue in your implementation.",
        ]
    return "\n".join(parts) + "\n"


def build_refine_prompt(prd: PRD) -> str:
    """Prompt asking which unfinished stories need sharper criteria."""
    open_stories = [s for s in prd.stories if not s.is_finished]
    return f"""Review these unfinished stories of PRD version {prd.version}:

{_story_json(open_stories)}

For each story, check:
1. Are acceptance criteria specific and testable?
2. Are there vague terms? ("settings", "improve", "properly", "handle")
3. Should it be split into smaller stories?

Output ONLY valid JSON:
{{
  "refinements": [
    {{
      "id": "story id",
      "title": "story title",
      "status": "ok" | "needs_work",
      "issues": ["issue 1"],
      "suggested_description": "clearer description",
      "suggested_acceptance": ["criterion 1", "criterion 2"],
      "tags": ["from", "original"],
      "depends_on": ["from", "original"]
    }}
  ],
  "summary": "X of Y stories need refinement"
}}

Copy tags and depends_on from the original. Be pragmatic: only flag real issues.
"""


def build_generate_prompt(prd: PRD, description: str) -> str:
    """Prompt asking for new stories that fit the PRD."""
    phases = ", ".join(f"{p.id}. {p.name}" for p in prd.phases) or "No phases defined"
    epics = (
        "\n".join(f"Phase {e.phase}, Epic {e.id}: {e.name}" for e in prd.epics)
        or "No epics defined"
    )
    sample = "\n".join(f"{s.number}: {s.title}" for s in prd.stories[:GENERATE_SAMPLE_SIZE])
    return f"""You are helping build a PRD. Here's the context:

PROJECT: {prd.project or prd.title or prd.version}
PHASES: {phases}
EPICS:
{epics}

EXISTING STORIES (sample):
{sample}

USER REQUEST:
{description}

Generate new stories that fit this PRD. Output ONLY valid JSON:
{{
  "stories": [
    {{
      "title": "Story title",
      "intent": "Why this matters",
      "acceptance": ["Criterion 1", "Criterion 2"],
      "phase": 1,
      "epic": 1,
      "depends_on": [],
      "tags": ["tag1"]
    }}
  ],
  "new_epic": {{"phase": 1, "name": "Epic name"}} | null,
  "reasoning": "Brief explanation of choices"
}}

Be specific with acceptance criteria. Match existing style.
"""


def related_stories(story: Story, stories: list[Story]) -> list[Story]:
    """Stories sharing two or more tags with, depending on, or depended on by story."""
    tags = set(story.tags)
    related: list[Story] = []
    for other in stories:
        if other.id == story.id:
            continue
        if len(tags.intersection(other.tags)) >= 2:
            related.append(other)
        elif any(d in (story.id, story.number) for d in other.depends_on):
            related.append(other)
        elif other.id in story.depends_on or other.number in story.depends_on:
            related.append(other)
    return related


def build_story_edit_prompt(story: Story, related: list[Story], requested_changes: str) -> str:
    """Prompt asking for an updated story plus consistency updates to related ones."""
    acceptance = "\n".join(f"{i}. {a}" for i, a in enumerate(story.acceptance, 1)) or "(none)"
    return f"""You are updating a PRD story based on user feedback.

TARGET STORY:
- ID: {story.id}
- Title: {story.title}
- Current Description: {story.description or "(none)"}
- Current Intent: {story.intent or "(none)"}
- Tags: {", ".join(story.tags) or "(none)"}
- Depends On: {", ".join(story.depends_on) or "(none)"}

Current Acceptance Criteria:
{acceptance}

USER REQUESTED CHANGES:
{requested_changes}

RELATED STORIES (share tags or dependencies, may need updates for consistency):
{_story_json(related)}

Tasks:
1. Generate updated description and acceptance criteria for the target story
2. Check if any related stories need updates to stay consistent
3. Be specific: avoid vague terms like "properly", "handle", "settings"

Output ONLY valid JSON (no markdown, no code blocks):
{{
  "target": {{
    "suggested_description": "Updated description",
    "suggested_acceptance": ["specific criterion 1", "specific criterion 2"],
    "suggested_intent": "Updated intent if needed"
  }},
  "related_updates": [
    {{
      "id": "story id",
      "reason": "Why this story needs updating",
      "suggested_description": "Updated description if changed",
      "suggested_acceptance": ["updated criteria if changed"]
    }}
  ],
  "summary": "Brief description of what changed and why"
}}

Only include related_updates for stories that actually need changes.
"""


def scope_stories(prd: PRD, scope: str, scope_id: str | None) -> tuple[list[Story], str]:
    """Select the stories an alignment covers.

    Args:
        prd: Version snapshot.
        scope: ``version``, ``phase`` or ``epic``.
        scope_id: Phase number, or ``phase.epic`` for epic scope.

    Returns:
        Tuple of (stories in scope, human-readable scope description).

    """
    stories = prd.stories
    phase_names = {p.id: p.name for p in prd.phases}
    if scope == "phase" and scope_id:
        phase = int(scope_id)
        name = phase_names.get(phase)
        description = f"Phase {phase}" + (f": {name}" if name else "")
        return [s for s in stories if s.phase == phase], description
    if scope == "epic" and scope_id:
        phase_str, _, epic_str = scope_id.partition(".")
        phase, epic = int(phase_str), int(epic_str)
        epic_name = next((e.name for e in prd.epics if e.phase == phase and e.id == epic), None)
        description = f"Phase {phase}, Epic {epic}" + (f": {epic_name}" if epic_name else "")
        return [s for s in stories if s.phase == phase and s.epic == epic], description
    return list(stories), f"Full version: {prd.version}"


def build_align_prompt(
    prd: PRD, vision: str, scope: str = "version", scope_id: str | None = None
) -> str:
    """Prompt comparing unfinished stories in scope against a vision."""
    stories, scope_description = scope_stories(prd, scope, scope_id)
    incomplete = [s for s in stories if not s.is_finished]
    return f"""You are analyzing a PRD for alignment with the user's vision.

## User's Vision
{vision}

## Scope: {scope}
{scope_description}

## Current Stories ({len(incomplete)} incomplete)
{_story_json(incomplete)}

## Analysis Required

Analyze how well the current stories align with the user's vision. Consider:

1. **Coverage**: Do the stories fully cover what's needed to achieve the vision?
2. **Gaps**: What capabilities or features are missing?
3. **Misalignments**: Are there stories that don't serve the vision or seem out of scope?
4. **Priority**: Are the most important aspects of the vision well-represented?

## Output JSON

{{
  "alignment_score": 0-100,
  "summary": "Brief overall assessment of alignment",
  "gaps": [{{"description": "What's missing", "priority": "high" | "medium" | "low"}}],
  "misalignments": [
    {{
      "story_id": "story id",
      "title": "Story title",
      "issue": "Why",
      "suggestion": "remove" | "modify" | "keep"
    }}
  ],
  "modifications": [
    {{
      "story_id": "story id",
      "suggested_title": "Better title if needed",
      "suggested_intent": "Updated intent",
      "suggested_acceptance": ["Updated criterion 1"],
      "reason": "Why this modification improves alignment"
    }}
  ],
  "new_stories": [
    {{"title": "Story title", "intent": "Why", "acceptance": ["Criterion"], "phase": 1, "epic": 1}}
  ]
}}

Be pragmatic and specific: only flag real issues, suggest concrete changes and
keep story titles concise.
"""


def summarize_result(result: Any) -> str:
    """One-line summary of an LLM JSON result for task lists."""
    if isinstance(result, dict):
        summary = result.get("summary") or result.get("reasoning")
        if summary:
            return str(summary)
    return ""
