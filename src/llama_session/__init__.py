"""HTTP platform glue over llama_core sessions."""
