"""Close drafts module: versioned wizard state, autosave session and finalize"""
