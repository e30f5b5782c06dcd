SYSTEM_PROMPT_SCHEMA = "You are a productivity analytics assistant. Always respond with valid JSON."

SYSTEM_PROMPT_JSON_ONLY = (
    "You are a productivity analytics assistant. Always respond with valid JSON only, no other text. "
    'The JSON must be an object of the form {"apps": [{"appName": string, "secondsUsed": number}]}.'
)

BATCH_HEADER_PROMPT = """You are analyzing user productivity data from screen captures and interaction metadata.

This is batch {batch_number} of {total_batches}. Each batch contains up to {chunk_size} click events with screenshots and metadata.

For each event, I'm providing:
- {screenshot_kind} (images attached below)
- The active application name
- Timestamp (both human-readable and Unix timestamp in seconds)
- Clicked UI element details
- Time between events

Your task: Estimate how many SECONDS the user spent in each application during this batch.
Base your estimate on:
1. Which app was active in each event
2. Time gaps between consecutive events (calculate using Unix timestamps)
3. Context from the metadata AND screenshots (what the user was actually doing)

IMPORTANT: For browsers (Safari, Chrome, Firefox, etc.), look at the screenshots to identify the top-level domain/website being used.
Instead of reporting time as "Safari" or "Google Chrome", report it by the website domain.
For example:
- If the user is on YouTube in Chrome, report it as "youtube" (not "Google Chrome")
- If the user is on GitHub in Safari, report it as "github" (not "Safari")
- If the user is on reddit.com, report it as "reddit"
Use the visible URL bar, page title, or recognizable website UI in the screenshots to identify the domain.

Look at the screenshots to understand what the user was doing in each application.
{screenshot_hint}

Events in this batch:
"""

BATCH_FOOTER_PROMPT = """

Provide your analysis as a JSON object with an "apps" array of app usage entries. Each entry should have:
- appName: The application name (or website domain for browsers)
- secondsUsed: Estimated seconds spent (integer, e.g., 150 for 2.5 minutes)

Only include apps that were actively used. Combine time for the same app across multiple events.
Use the Unix timestamps to calculate accurate durations."""
