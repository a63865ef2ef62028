import os

import uvicorn


def main():
    uvicorn.run(
        "billpay.app:app",
        host=os.environ.get("BILLPAY_HOST", "0.0.0.0"),
        port=int(os.environ.get("BILLPAY_PORT", "8000")),
        log_config=None,  # keep the handlers from setup_logging()
    )


if __name__ == "__main__":
    main()
