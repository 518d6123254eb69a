"""Prompt templates sent to the chat-completions model."""

DEFAULT_USER_ROLES = ('End Client', 'Admin', 'Developer')

PLATFORM_VARIANTS = ('CMS', 'Legl', 'End client', 'Back end', 'Third party')

TRANSCRIPT_SYSTEM_PROMPT = (
    'You are a user journey mapping expert. You extract user journeys from transcripts '
    'and return valid JSON only. Never include markdown code blocks or explanations.'
)


def format_roles(user_role_names):
    names = [name for name in (user_role_names or []) if name]
    if not names:
        names = list(DEFAULT_USER_ROLES)
    return ', '.join(f'"{name}"' for name in names)


def build_transcript_prompt(user_role_names=None):
    """Instructions for turning a meeting transcript into a journey."""
    roles = format_roles(user_role_names)
    variants = ', '.join(f'"{v}"' for v in PLATFORM_VARIANTS)
    return f"""You are analyzing a meeting transcript about a user journey. Extract the following information and return it as valid JSON:

IMPORTANT: Return ONLY valid JSON, no markdown formatting, no code blocks, no extra text.

1. Nodes: each step or action mentioned in the transcript
   - id: unique identifier ("node-1", "node-2", ...)
   - type: "start" (first step), "process" (middle step) or "end" (final step)
   - position: x,y coordinates snapped to an 8x8 grid (all values MUST be multiples of 8)
   - data: an object containing
     * label: the main text describing this step
     * type: same as the top-level type
     * userRole: the EXACT role name performing this step. Available roles: {roles}.
       Only use roles from this list. Choose the closest match; if unsure use the first role.
     * variant: one of {variants} or ""
     * thirdPartyName: the service name when variant is "Third party" (e.g. "Stripe", "Auth0"), otherwise ""
     * bulletPoints: array of detailed actions or sub-steps
     * customProperties: {{}}

2. Edges: connections between steps
   - id: unique identifier ("edge-1-2")
   - source, target: node ids
   - label: only for branches ("If successful", "On error"); "" for linear flows
   - data: {{"label": same text as label}}

3. Metadata
   - name: title of the journey inferred from the transcript
   - description: brief summary of the overall flow

Return format:
{{
  "name": "Journey Name",
  "description": "Journey description",
  "nodes": [{{"id": "node-1", "type": "start", "position": {{"x": 96, "y": 96}},
    "data": {{"label": "Step", "type": "start", "userRole": "End Client", "variant": "End client",
      "thirdPartyName": "", "bulletPoints": [], "customProperties": {{}}}}}}],
  "edges": [{{"id": "edge-1-2", "source": "node-1", "target": "node-2", "label": "", "data": {{"label": ""}}}}]
}}

Layout rules:
- All node properties MUST be inside the "data" object
- Linear flows: keep x at 96 and increase y by 240 per step (96, 336, 576, ...)
- Branches: offset parallel paths horizontally by 384
- If a third-party service is named (Stripe, Auth0, Mailchimp, Salesforce, DocuSign, ...), set variant to "Third party" and thirdPartyName to the service"""


def build_diagram_prompt(user_role_names=None):
    """Instructions for reading a journey diagram screenshot."""
    roles = format_roles(user_role_names)
    variants = ', '.join(f'"{v}"' for v in PLATFORM_VARIANTS)
    return f"""You are analyzing a user journey diagram image (possibly from Miro, Figma, or similar tools). Extract it and return valid JSON.

IMPORTANT: Return ONLY valid JSON, no markdown formatting, no code blocks, no extra text.

1. Nodes: every box, shape or card representing a step
   - id: unique identifier ("node-1", "node-2", ...)
   - type: "start", "process" or "end"
   - position: x,y measured from the top-left of the diagram, snapped to multiples of 8, preserving the visual layout
   - data:
     * label: the main text of the step
     * type: same as the top-level type
     * userRole: the EXACT role name performing the step. Available roles: {roles}. Match exact casing; if unsure use the first role.
     * variant: one of {variants} or ""
     * thirdPartyName: service name when variant is "Third party", otherwise ""
     * bulletPoints: sub-steps or details listed in the node
     * notifications: [{{"id": "notif-1", "type": "pain-point|warning|info|positive", "message": "..."}}]
       (red markers are pain points, yellow/orange warnings, blue/gray info, green positive)
     * customProperties: {{}}

2. Edges: every arrow between nodes
   - id: "edge-<source>-<target>"
   - source, target: node ids
   - label: text on or near the arrow, "" when there is none
   - data: {{"label": same text as label}}

3. name: a title for the journey

Trace every arrow carefully and count arrows against edges before answering. Extract ALL nodes and edges."""


EDIT_JOURNEY_SYSTEM_PROMPT = """You are a precise user journey editor. Apply the requested changes and return the COMPLETE journey as JSON.

You MUST respond with valid JSON containing the full journey structure.

CRITICAL RULES:
- Include ALL nodes and edges (even unchanged ones) in your response
- Preserve exact structure: { "nodes": [...], "edges": [...] }
- Each node must have: id, type, position {x, y}, data {label, variant, userRole, bulletPoints, notifications, etc}
- Keep position coordinates as multiples of 8
- When replacing text: update labels, bulletPoints, thirdPartyName, variant
- When adding nodes: generate unique IDs (e.g., "node-16", "node-17"), position on grid (multiples of 8)
- When removing nodes: also remove connected edges
- For edges, ALWAYS preserve sourceHandle and targetHandle exactly as provided
- Preserve all properties not mentioned in the instruction

SELECTION-AWARE EDITING:
- If the instruction mentions "selected nodes", ONLY modify the selected nodes
- If the instruction is general, apply it to ALL matching nodes
- Preserve the selection state in the response

Work efficiently - focus only on what needs to change. Return the complete journey structure as JSON."""


def build_edit_journey_user_prompt(current_journey, journey_json, instruction):
    nodes = current_journey.get('nodes') or []
    edges = current_journey.get('edges') or []
    selected = current_journey.get('selectedNodeIds') or []
    if selected:
        selection_info = f"{len(selected)} node(s) are SELECTED (IDs: {', '.join(str(s) for s in selected)})"
    else:
        selection_info = 'No nodes selected'
    return (
        f'Journey ({len(nodes)} nodes, {len(edges)} edges):\n'
        f'{selection_info}\n'
        f'{journey_json}\n\n'
        f'Instruction: {instruction}\n\n'
        'Return the COMPLETE updated journey as compact JSON.'
    )


SCREENSHOT_EXAMPLES_PROMPT = """Analyze this Miro board screenshot containing post-it notes with user journey examples.

IMPORTANT: Only extract data that is actually visible in the screenshot. Do not create or hallucinate examples that are not present in the image.

Each example is a row following the example table column order:
- actor: who is performing the action (prefer existing user roles)
- goal: what they want to achieve
- entry_point: how they start
- actions: steps they take
- error: problems they encounter
- outcome: final result

Guidelines:
- Read the actual text from each post-it note or table row
- Examples may share fields with other examples and differ in only one field; keep them
- If you cannot clearly read the text of an example, leave it out

Return JSON only: {"examples": [{"actor": "", "goal": "", "entry_point": "", "actions": "", "error": "", "outcome": ""}]}"""
