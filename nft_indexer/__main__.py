from nft_indexer.main import run

run()
