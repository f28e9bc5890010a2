"""Scene tagger — derives image-generation tag prompts from chat context.

Pipeline for one user action:
  1. Resolve a ContextSnapshot from the host's chat/character/persona state.
  2. Build the model prompts (three tag-list prompts or one structured prompt).
  3. Invoke the host's text-generation backend.
  4. Parse the output into scene / character / user strings.
  5. Commit the three strings to the persisted settings.
"""
