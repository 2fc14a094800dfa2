"""
Language-model side of the assistant: provider, prompt, reply parsing and turn orchestration.
"""
