"""
Generative analysis collaborator.

Submodules:
  gemini_client — GeminiAnalysisGenerator: prompt building, REST call and
                  response parsing for the Gemini ``generateContent`` API.

Credential placement (.env, gitignored):
  GEMINI_API_KEY — Google AI Studio API key
"""
