# Allows `python -m trap_pipeline` to serve the status API with uvicorn.
if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    from trap_pipeline.main import create_app

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
