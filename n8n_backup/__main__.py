from n8n_backup.cli import app

if __name__ == "__main__":
    app()
