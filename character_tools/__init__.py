"""Character tools: score, rewrite and analyze a character card with an LLM,
then refine the rewrite over numbered iterations."""
