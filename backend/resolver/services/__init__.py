"""Services module - Supabase, Redis and OpenAI backed collaborators of the pipeline."""
