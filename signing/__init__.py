"""signflow: document signing workflow engine."""
