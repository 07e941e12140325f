import sys

from certsearch.cli import main

if __name__ == "__main__":
    # Запуск из корня репозитория: python -m scripts.search_certs -q '%.example.com'
    sys.exit(main())
