"""Creative tagging: taxonomies, AI collaborators and batch pipelines."""
