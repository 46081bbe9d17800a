from filter_stream.main import main

main()
