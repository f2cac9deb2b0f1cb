"""
RevAI systematic review screening application package.

This package contains the article screening service: it ingests flat
file exports of article abstracts, stores them per review session and
asks an OpenAI chat model for Include/Exclude/Unsure recommendations
which reviewers can then confirm or override.
"""
