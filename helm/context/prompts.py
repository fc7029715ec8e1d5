SUMMARIZE_PROMPT = """You are summarizing an active coding session so another agent can continue it seamlessly.
The conversation so far is above. Produce a state handoff, not a story.

## Required Sections:

### Goal
What is the user trying to accomplish right now?

### Progress
What has been done: files read, changed or created, commands run, and their outcomes.

### Open Problems
Errors still unresolved, failed attempts and why they failed.

### Next Steps
Ordered checklist of what should happen next (3-8 items).

### Key Context
File paths, identifiers, decisions and constraints the next agent must not lose.

## Rules:
- Keep exact file paths, function names and error messages
- Do NOT repeat tool output verbatim unless it is essential
- Be terse."""

SUMMARIZE_INSTRUCTION = "Summarize the conversation above following the required sections."

SUMMARY_HEADER = "[Summary of earlier conversation]"

PRUNED_OUTPUT = "[Old tool output pruned to save context: ~{tokens} tokens]"
